"""Shared fakes for tunnel tests."""

from __future__ import annotations

import asyncio

import pytest

from bastionproxy.core.auth import AuthConfig
from bastionproxy.core.exceptions import ForwardError, TunnelDialError
from bastionproxy.core.identifier import RelayIdentifier, join_host_port
from bastionproxy.core.transport import ForwardedStream


class FakeWriter:
    def __init__(self) -> None:
        self.data = bytearray()
        self.closed = False
        self.eof = False

    def write(self, data: bytes) -> None:
        self.data.extend(data)

    async def drain(self) -> None:
        pass

    def can_write_eof(self) -> bool:
        return True

    def write_eof(self) -> None:
        self.eof = True

    def close(self) -> None:
        self.closed = True


class FakeHandle:
    """In-memory TunnelHandle whose stream opens fail a scripted number of times."""

    def __init__(self, relay: str, failures: list[str] | None = None) -> None:
        self.relay = relay
        self.failures = failures if failures is not None else []
        self.opened: list[str] = []
        self.close_calls = 0
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def open_stream(self, host: str, port: int) -> ForwardedStream:
        destination = join_host_port(host, port)
        self.opened.append(destination)
        if self._closed:
            raise ForwardError(destination, "ssh connection closed")
        if self.failures:
            raise ForwardError(destination, self.failures.pop(0))
        return ForwardedStream(reader=asyncio.StreamReader(), writer=FakeWriter(), destination=destination)

    async def close(self) -> None:
        self.close_calls += 1
        self._closed = True


class FakeDialer:
    """TunnelDialer that records dials and hands out FakeHandles.

    ``stream_failures`` is a shared script consumed across all handles, so a
    failure on one handle followed by success after redial can be expressed.
    """

    def __init__(
        self,
        stream_failures: list[str] | None = None,
        dial_error: str | None = None,
        dial_delay: float = 0.0,
    ) -> None:
        self.stream_failures = stream_failures if stream_failures is not None else []
        self.dial_error = dial_error
        self.dial_delay = dial_delay
        self.dials: list[str] = []
        self.handles: list[FakeHandle] = []

    async def dial(self, relay: RelayIdentifier, auth: AuthConfig) -> FakeHandle:
        self.dials.append(relay.key)
        if self.dial_delay:
            await asyncio.sleep(self.dial_delay)
        if self.dial_error:
            raise TunnelDialError(relay.key, self.dial_error)
        handle = FakeHandle(relay.key, self.stream_failures)
        self.handles.append(handle)
        return handle

    @property
    def open_attempts(self) -> int:
        return sum(len(h.opened) for h in self.handles)


@pytest.fixture
def auth() -> AuthConfig:
    return AuthConfig(username="tester")


@pytest.fixture
def relay() -> RelayIdentifier:
    return RelayIdentifier(host="bastion1", port="22")
