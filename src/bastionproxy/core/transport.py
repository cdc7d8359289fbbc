"""SSH transport used to reach bastion hosts.

A TunnelHandle is one live SSH connection to a bastion. Any number of
ForwardedStreams (``direct-tcpip`` channels) may be multiplexed over it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Protocol

import asyncssh
import structlog

from bastionproxy.core.auth import AuthConfig
from bastionproxy.core.exceptions import ForwardError, TunnelDialError
from bastionproxy.core.identifier import RelayIdentifier, join_host_port

logger = structlog.get_logger()


@dataclass
class ForwardedStream:
    """Byte stream to a destination, owned by the caller once returned."""

    reader: Any
    writer: Any
    destination: str

    def close(self) -> None:
        self.writer.close()


class TunnelHandle(Protocol):
    relay: str

    @property
    def is_closed(self) -> bool: ...

    async def open_stream(self, host: str, port: int) -> ForwardedStream: ...

    async def close(self) -> None: ...


class TunnelDialer(Protocol):
    async def dial(self, relay: RelayIdentifier, auth: AuthConfig) -> TunnelHandle: ...


class SSHTunnelHandle:
    """TunnelHandle backed by an asyncssh client connection."""

    def __init__(self, conn: asyncssh.SSHClientConnection, relay: str) -> None:
        self.relay = relay
        self._conn = conn
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def open_stream(self, host: str, port: int) -> ForwardedStream:
        destination = join_host_port(host, port)
        if self._closed:
            raise ForwardError(destination, "ssh connection closed")
        try:
            reader, writer = await self._conn.open_connection(host, port)
        except asyncssh.ChannelOpenError as e:
            raise ForwardError(destination, e.reason) from e
        except (OSError, asyncssh.Error) as e:
            raise ForwardError(destination, str(e)) from e
        return ForwardedStream(reader=reader, writer=writer, destination=destination)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._conn.close()
        await self._conn.wait_closed()


class SSHDialer:
    """Opens SSH connections to bastions with the shared AuthConfig."""

    def __init__(self, connect_timeout: float | None = None) -> None:
        self._connect_timeout = connect_timeout

    async def dial(self, relay: RelayIdentifier, auth: AuthConfig) -> SSHTunnelHandle:
        try:
            port = int(relay.port)
        except ValueError:
            raise TunnelDialError(relay.key, f"invalid port {relay.port!r}") from None

        options = await auth.connect_options()
        try:
            conn = await asyncio.wait_for(
                asyncssh.connect(relay.host, port, **options),
                timeout=self._connect_timeout,
            )
        except asyncio.TimeoutError:
            raise TunnelDialError(
                relay.key, f"timed out after {self._connect_timeout}s"
            ) from None
        except (OSError, asyncssh.Error) as e:
            raise TunnelDialError(relay.key, str(e)) from e

        return SSHTunnelHandle(conn, relay.key)
