"""Registry of bastion tunnels keyed by relay identifier."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from bastionproxy.core.auth import AuthProvider
from bastionproxy.core.identifier import RelayIdentifier
from bastionproxy.core.transport import TunnelDialer
from bastionproxy.core.tunnel import RelayTunnel

logger = structlog.get_logger()

TunnelFactory = Callable[[RelayIdentifier], Awaitable[RelayTunnel]]


class RelayRegistry:
    """Concurrency-safe get-or-create cache of RelayTunnels.

    Entries are never removed. A bastion whose connection has been closed for
    inactivity keeps its entry so the next request redials through the same
    RelayTunnel. Memory therefore grows with the number of distinct bastions
    seen over the life of the process.
    """

    def __init__(self, factory: TunnelFactory) -> None:
        self._factory = factory
        self._tunnels: dict[RelayIdentifier, RelayTunnel] = {}
        self._creation_locks: dict[RelayIdentifier, asyncio.Lock] = {}
        self._creation_users: dict[RelayIdentifier, int] = {}
        self._lock = asyncio.Lock()

    async def get_or_create(self, identifier: RelayIdentifier) -> RelayTunnel:
        """Return the tunnel for ``identifier``, creating it on first use.

        Concurrent callers for the same identifier share one construction.
        Construction for different identifiers runs in parallel.

        Raises:
            AuthSetupError: If the tunnel could not be constructed. Nothing is
                registered in that case.
        """
        tunnel = self._tunnels.get(identifier)
        if tunnel is not None:
            return tunnel

        async with self._lock:
            creation_lock = self._creation_locks.setdefault(identifier, asyncio.Lock())
            self._creation_users[identifier] = self._creation_users.get(identifier, 0) + 1

        try:
            async with creation_lock:
                tunnel = self._tunnels.get(identifier)
                if tunnel is not None:
                    return tunnel

                logger.debug("Registering bastion host", relay=identifier.key)
                try:
                    tunnel = await self._factory(identifier)
                except Exception as e:
                    logger.error("Error creating bastion", relay=identifier.key, error=str(e))
                    raise

                self._tunnels[identifier] = tunnel
                return tunnel
        finally:
            # The lock is dropped once no caller holds or waits on it.
            async with self._lock:
                self._creation_users[identifier] -= 1
                if not self._creation_users[identifier]:
                    del self._creation_users[identifier]
                    del self._creation_locks[identifier]

    def get(self, identifier: RelayIdentifier) -> RelayTunnel | None:
        return self._tunnels.get(identifier)

    def __len__(self) -> int:
        return len(self._tunnels)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._tunnels

    def known_relays(self) -> list[str]:
        return [identifier.key for identifier in self._tunnels]

    def tunnels(self) -> list[RelayTunnel]:
        return list(self._tunnels.values())

    @property
    def active_count(self) -> int:
        return sum(1 for tunnel in self._tunnels.values() if tunnel.active)

    async def close_all(self) -> None:
        """Close every live connection. Entries stay registered."""
        for tunnel in list(self._tunnels.values()):
            await tunnel.close()

    def get_stats(self) -> dict[str, Any]:
        return {
            "known_relays": len(self._tunnels),
            "active_relays": self.active_count,
            "relays": {
                identifier.key: tunnel.get_stats()
                for identifier, tunnel in self._tunnels.items()
            },
        }


def ssh_tunnel_factory(
    auth_provider: AuthProvider,
    dialer: TunnelDialer,
    retries: int,
) -> TunnelFactory:
    """Build the factory that creates SSH-backed RelayTunnels."""

    async def create(identifier: RelayIdentifier) -> RelayTunnel:
        auth = await auth_provider.get()
        tunnel = RelayTunnel(identifier, auth, dialer, retries)
        logger.debug("New bastion server registered", relay=identifier.key)
        return tunnel

    return create
