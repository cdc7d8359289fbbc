"""Tests for BastionProxy wiring and the status report."""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeDialer
from structlog.testing import capture_logs

from bastionproxy.core.auth import AuthConfig
from bastionproxy.core.config import ProxyConfig, clear_config, set_config
from bastionproxy.core.exceptions import ForwardError
from bastionproxy.core.identifier import RelayIdentifier
from bastionproxy.core.registry import RelayRegistry, ssh_tunnel_factory
from bastionproxy.server.proxy import BastionProxy, log_status, status_reporter
from bastionproxy.server.socks import AuthContext, Reply


class StaticAuthProvider:
    async def get(self) -> AuthConfig:
        return AuthConfig(username="deploy")


def _proxy(dialer: FakeDialer, **overrides) -> BastionProxy:
    config = ProxyConfig(ssh_user="deploy", listen_port=0, **overrides)
    registry = RelayRegistry(ssh_tunnel_factory(StaticAuthProvider(), dialer, config.max_retries))
    return BastionProxy(config, registry=registry)


def _auth(host: str, port: str) -> AuthContext:
    return AuthContext(method=2, payload={"Username": host, "Password": port})


class TestBastionProxyDial:
    """The dial callback routes by credentials through the registry."""

    @pytest.mark.asyncio
    async def test_routes_by_credentials(self) -> None:
        dialer = FakeDialer()
        proxy = _proxy(dialer)

        stream = await proxy.dial(_auth("bastion1", "22"), "10.0.0.5", 443)

        assert stream.destination == "10.0.0.5:443"
        assert dialer.dials == ["bastion1:22"]
        assert RelayIdentifier("bastion1", "22") in proxy.registry
        await proxy.registry.close_all()

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_dial(self) -> None:
        """Two concurrent requests to one bastion dial it once."""
        dialer = FakeDialer(dial_delay=0.05)
        proxy = _proxy(dialer)

        first, second = await asyncio.gather(
            proxy.dial(_auth("bastion1", "22"), "10.0.0.5", 443),
            proxy.dial(_auth("bastion1", "22"), "10.0.0.6", 443),
        )

        assert dialer.dials == ["bastion1:22"]
        assert {first.destination, second.destination} == {"10.0.0.5:443", "10.0.0.6:443"}
        assert len(proxy.registry) == 1
        await proxy.registry.close_all()

    @pytest.mark.asyncio
    async def test_different_bastions_get_different_tunnels(self) -> None:
        dialer = FakeDialer()
        proxy = _proxy(dialer)

        await proxy.dial(_auth("bastion1", "22"), "10.0.0.5", 443)
        await proxy.dial(_auth("bastion2", "2222"), "10.1.0.5", 443)

        assert dialer.dials == ["bastion1:22", "bastion2:2222"]
        assert len(proxy.registry) == 2
        await proxy.registry.close_all()

    @pytest.mark.asyncio
    async def test_retry_budget_from_config(self) -> None:
        dialer = FakeDialer(stream_failures=["refused"] * 5)
        proxy = _proxy(dialer, max_retries=3)

        with pytest.raises(ForwardError):
            await proxy.dial(_auth("bastion1", "22"), "10.0.0.5", 443)

        assert len(dialer.dials) == 3
        await proxy.registry.close_all()

    @pytest.mark.asyncio
    async def test_idle_close_from_config(self) -> None:
        dialer = FakeDialer()
        proxy = _proxy(dialer, idle_close="100ms")

        await proxy.dial(_auth("bastion1", "22"), "10.0.0.5", 443)
        await asyncio.sleep(0.15)
        await proxy.dial(_auth("bastion1", "22"), "10.0.0.5", 443)

        assert len(dialer.dials) == 2
        await proxy.registry.close_all()


class TestBastionProxyLifecycle:
    """Start and stop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self) -> None:
        proxy = _proxy(FakeDialer(), status_interval=0.05)
        await proxy.start()
        assert proxy.socks.port != 0

        stats = proxy.get_stats()
        assert stats["known_relays"] == 0
        assert stats["listen"].startswith("127.0.0.1:")

        await proxy.stop()

    @pytest.mark.asyncio
    async def test_stats_count_handled_connections(self) -> None:
        """Every accepted SOCKS client is counted, failed dials included."""
        dialer = FakeDialer(dial_error="Permission denied")
        proxy = _proxy(dialer)
        await proxy.start()
        try:
            for _ in range(2):
                reader, writer = await asyncio.open_connection("127.0.0.1", proxy.socks.port)
                writer.write(bytes([5, 1, 2]))
                await reader.readexactly(2)
                writer.write(bytes([1, 8]) + b"bastion1" + bytes([2]) + b"22")
                await reader.readexactly(2)
                writer.write(bytes([5, 1, 0, 3, 11]) + b"db.internal" + (5432).to_bytes(2, "big"))
                await writer.drain()

                reply = await reader.readexactly(10)
                assert reply[1] == Reply.HOST_UNREACHABLE
                writer.close()

            stats = proxy.get_stats()
            assert stats["connections_handled"] == 2
            assert stats["known_relays"] == 1
            assert stats["active_relays"] == 0
            assert stats["relays"]["bastion1:22"]["active"] is False
            assert dialer.dials == ["bastion1:22", "bastion1:22"]
        finally:
            await proxy.stop()

    def test_uses_global_config_by_default(self) -> None:
        set_config(ProxyConfig(ssh_user="deploy", listen_port=0, max_retries=5))
        try:
            proxy = BastionProxy()
            assert proxy.config.max_retries == 5
            assert proxy.config.ssh_user == "deploy"
        finally:
            clear_config()


class TestStatusReport:
    """Tests for the periodic status log."""

    @pytest.mark.asyncio
    async def test_log_status(self) -> None:
        dialer = FakeDialer()
        proxy = _proxy(dialer)
        await proxy.dial(_auth("bastion1", "22"), "10.0.0.5", 443)
        await proxy.registry.get_or_create(RelayIdentifier("bastion2", "22"))

        with capture_logs() as logs:
            log_status(proxy.registry)

        entry = next(log for log in logs if log["event"] == "Tunnel status")
        assert entry["known_relays"] == 2
        assert entry["active_relays"] == 1
        assert entry["relay_hosts"] == "bastion1:22, bastion2:22"
        await proxy.registry.close_all()

    @pytest.mark.asyncio
    async def test_status_reporter_repeats(self) -> None:
        registry = RelayRegistry(ssh_tunnel_factory(StaticAuthProvider(), FakeDialer(), 2))

        with capture_logs() as logs:
            task = asyncio.create_task(status_reporter(registry, 0.02))
            await asyncio.sleep(0.07)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert sum(1 for log in logs if log["event"] == "Tunnel status") >= 2
