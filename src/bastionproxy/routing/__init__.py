"""Routing of inbound SOCKS5 requests to bastion relays."""

from bastionproxy.routing.credentials import CredentialRouter

__all__ = [
    "CredentialRouter",
]
