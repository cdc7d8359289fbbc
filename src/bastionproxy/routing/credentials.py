"""Credential-based relay routing.

The SOCKS5 username names the bastion host and the password names the
bastion SSH port. The fields carry addressing data only: they are never
checked, and any value is accepted as-is. A bad host or port only shows up
later as a failure to dial the bastion.

Usage:
    router = CredentialRouter()
    relay = router.resolve("bastion1.example.com", "22")
    relay.key  # "bastion1.example.com:22"
"""

from __future__ import annotations

from bastionproxy.core.identifier import RelayIdentifier


class CredentialRouter:
    def resolve(self, username: str | None, password: str | None) -> RelayIdentifier:
        return RelayIdentifier(host=username or "", port=password or "")
