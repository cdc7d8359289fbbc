"""Relay identifiers."""

from __future__ import annotations

from dataclasses import dataclass


def join_host_port(host: str, port: str | int) -> str:
    """Join host and port into ``host:port``, bracketing IPv6 literals."""
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


@dataclass(frozen=True)
class RelayIdentifier:
    """Opaque, hashable key naming one bastion endpoint.

    The port is kept as the string the client supplied; it is only
    interpreted when the tunnel is dialled.
    """

    host: str
    port: str

    @property
    def key(self) -> str:
        return join_host_port(self.host, self.port)

    def __str__(self) -> str:
        return self.key
