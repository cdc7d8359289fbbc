"""BastionProxy - wires credential routing, the tunnel registry and SOCKS5."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any

import structlog

from bastionproxy.core.auth import AuthProvider
from bastionproxy.core.config import ProxyConfig, get_config
from bastionproxy.core.registry import RelayRegistry, ssh_tunnel_factory
from bastionproxy.core.transport import ForwardedStream, SSHDialer, TunnelDialer
from bastionproxy.routing.credentials import CredentialRouter
from bastionproxy.server.socks import AuthContext, SocksServer

logger = structlog.get_logger()


class BastionProxy:
    """Local SOCKS5 proxy forwarding through per-bastion SSH tunnels.

    Example:
        proxy = BastionProxy(ProxyConfig(listen_port=5101))
        await proxy.run()

    Without an explicit config the process-wide ``get_config()`` is used.

    Clients select the bastion with their SOCKS5 credentials:
    ``curl --socks5 bastion1.example.com:22@127.0.0.1:5101 http://10.0.0.5/``
    """

    def __init__(
        self,
        config: ProxyConfig | None = None,
        registry: RelayRegistry | None = None,
        dialer: TunnelDialer | None = None,
        router: CredentialRouter | None = None,
    ) -> None:
        if config is None:
            config = get_config()
        self.config = config
        self.router = router or CredentialRouter()
        self._auth_provider: AuthProvider | None = None

        if registry is None:
            self._auth_provider = AuthProvider(
                username=config.ssh_user or "",
                key_file=config.ssh_key_file,
                agent_path=config.agent_path,
                known_hosts=config.known_hosts,
            )
            registry = RelayRegistry(
                ssh_tunnel_factory(
                    self._auth_provider,
                    dialer or SSHDialer(connect_timeout=config.connect_timeout),
                    config.max_retries,
                )
            )
        self.registry = registry

        self.socks = SocksServer(self.dial, host=config.listen_host, port=config.listen_port)
        self._status_task: asyncio.Task[None] | None = None

    async def dial(self, auth: AuthContext, host: str, port: int) -> ForwardedStream:
        """Dial callback used by the SOCKS5 frontend."""
        relay = self.router.resolve(auth.username, auth.password)
        logger.debug("Forwarding connection", relay=relay.key, destination=f"{host}:{port}")
        tunnel = await self.registry.get_or_create(relay)
        return await tunnel.forward_to(host, port, self.config.idle_close)

    async def start(self) -> None:
        await self.socks.start()
        if self.config.status_interval > 0:
            self._status_task = asyncio.create_task(
                status_reporter(self.registry, self.config.status_interval)
            )

    async def run(self) -> None:
        await self.start()
        try:
            await self.socks.serve_forever()
        finally:
            await self.stop()

    async def stop(self) -> None:
        if self._status_task is not None:
            self._status_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._status_task
            self._status_task = None
        await self.socks.stop()
        await self.registry.close_all()
        if self._auth_provider is not None:
            await self._auth_provider.close()

    def get_stats(self) -> dict[str, Any]:
        stats = self.registry.get_stats()
        stats["listen"] = self.socks.address
        stats["connections_handled"] = self.socks.connection_count
        return stats


def log_status(registry: RelayRegistry) -> None:
    logger.info(
        "Tunnel status",
        known_relays=len(registry),
        active_relays=registry.active_count,
        relay_hosts=", ".join(registry.known_relays()),
    )


async def status_reporter(registry: RelayRegistry, interval: float) -> None:
    """Log the known relays every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        log_status(registry)
