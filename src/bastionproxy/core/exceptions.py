"""Error types raised by the relay connection lifecycle."""

from __future__ import annotations


class BastionProxyError(Exception):
    """Base class for all bastionproxy errors."""


class AuthSetupError(BastionProxyError):
    """SSH authentication material could not be prepared.

    Raised when the SSH agent is unreachable or a private key file cannot be
    read or parsed. Fatal for registering a relay, never for the process.
    """


class TunnelDialError(BastionProxyError):
    """The SSH connection to a relay could not be established."""

    def __init__(self, relay: str, reason: str) -> None:
        self.relay = relay
        self.reason = reason
        super().__init__(f"dial bastion {relay} failed: {reason}")


class ForwardError(BastionProxyError):
    """A destination connection could not be opened through a live tunnel."""

    def __init__(self, destination: str, reason: str) -> None:
        self.destination = destination
        self.reason = reason
        super().__init__(f"forward to {destination} failed: {reason}")
