"""SOCKS5 frontend (RFC 1928 CONNECT with RFC 1929 username/password).

Every client must use username/password authentication. Any credentials are
accepted. They are passed to the dial callback as an AuthContext, which uses
them to pick the bastion. Only CONNECT is supported. Domain names are passed
through unresolved so the bastion resolves them on its own network.
"""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
import struct
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

import structlog

from bastionproxy.core.identifier import join_host_port
from bastionproxy.core.transport import ForwardedStream

logger = structlog.get_logger()

SOCKS_VERSION = 0x05
AUTH_VERSION = 0x01
AUTH_USERNAME_PASSWORD = 0x02
AUTH_NO_ACCEPTABLE = 0xFF
AUTH_SUCCESS = 0x00

BUFFER_SIZE = 64 * 1024
HANDSHAKE_TIMEOUT = 30.0


class Command(IntEnum):
    CONNECT = 0x01
    BIND = 0x02
    UDP_ASSOCIATE = 0x03


class AddressType(IntEnum):
    IPV4 = 0x01
    DOMAIN = 0x03
    IPV6 = 0x04


class Reply(IntEnum):
    SUCCEEDED = 0x00
    GENERAL_FAILURE = 0x01
    NOT_ALLOWED = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_NOT_SUPPORTED = 0x08


@dataclass
class AuthContext:
    """Authentication payload negotiated with a SOCKS5 client."""

    method: int
    payload: dict[str, str] = field(default_factory=dict)

    @property
    def username(self) -> str:
        return self.payload.get("Username", "")

    @property
    def password(self) -> str:
        return self.payload.get("Password", "")


DialCallback = Callable[[AuthContext, str, int], Awaitable[ForwardedStream]]


class SocksProtocolError(Exception):
    """The client violated the SOCKS5 protocol."""


def reply_for_error(error: BaseException) -> Reply:
    """Map a dial failure to the SOCKS5 reply code sent to the client."""
    message = str(error).lower()
    if "refused" in message:
        return Reply.CONNECTION_REFUSED
    if "network is unreachable" in message:
        return Reply.NETWORK_UNREACHABLE
    return Reply.HOST_UNREACHABLE


def encode_reply(reply: Reply, host: str = "0.0.0.0", port: int = 0) -> bytes:
    addr = ipaddress.ip_address(host)
    atyp = AddressType.IPV4 if addr.version == 4 else AddressType.IPV6
    return bytes([SOCKS_VERSION, reply, 0x00, atyp]) + addr.packed + struct.pack("!H", port)


async def read_address(reader: asyncio.StreamReader, atyp: int) -> tuple[str, int]:
    """Read a SOCKS5 destination address and port."""
    if atyp == AddressType.IPV4:
        host = str(ipaddress.IPv4Address(await reader.readexactly(4)))
    elif atyp == AddressType.IPV6:
        host = str(ipaddress.IPv6Address(await reader.readexactly(16)))
    elif atyp == AddressType.DOMAIN:
        length = (await reader.readexactly(1))[0]
        host = (await reader.readexactly(length)).decode("utf-8", errors="replace")
    else:
        raise SocksProtocolError(f"unsupported address type {atyp:#x}")

    (port,) = struct.unpack("!H", await reader.readexactly(2))
    return host, port


class SocksServer:
    """Asyncio SOCKS5 server that hands CONNECT requests to a dial callback."""

    def __init__(
        self,
        dial: DialCallback,
        host: str = "127.0.0.1",
        port: int = 5101,
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
    ) -> None:
        self._dial = dial
        self._host = host
        self._port = port
        self._handshake_timeout = handshake_timeout
        self._server: asyncio.Server | None = None
        self._writers: set[asyncio.StreamWriter] = set()
        self._connection_count = 0

    @property
    def port(self) -> int:
        """Bound port (useful when started with port 0)."""
        if self._server is not None and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self._port

    @property
    def address(self) -> str:
        return join_host_port(self._host, self.port)

    @property
    def connection_count(self) -> int:
        return self._connection_count

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle_client, self._host, self._port)
        logger.info("Serving SOCKS5 proxy", address=self.address)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        assert self._server is not None
        await self._server.serve_forever()

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for writer in list(self._writers):
            writer.close()
        await self._server.wait_closed()
        self._server = None

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername")
        log = logger.bind(client=str(peer))
        self._writers.add(writer)
        self._connection_count += 1
        stream: ForwardedStream | None = None
        try:
            request = await asyncio.wait_for(
                self._handshake(reader, writer), timeout=self._handshake_timeout
            )
            if request is None:
                return
            auth, host, port = request

            log = log.bind(destination=join_host_port(host, port))
            log.debug("Incoming SOCKS request", relay_user=auth.username)
            try:
                stream = await self._dial(auth, host, port)
            except Exception as e:
                reply = reply_for_error(e)
                log.warning("Connect failed", error=str(e), reply=reply.name)
                await self._send_reply(writer, reply)
                return

            await self._send_reply(writer, Reply.SUCCEEDED)
            await self._relay(reader, writer, stream)
        except asyncio.TimeoutError:
            log.debug("SOCKS handshake timed out")
        except asyncio.IncompleteReadError:
            log.debug("Client closed during SOCKS handshake")
        except SocksProtocolError as e:
            log.debug("SOCKS protocol error", error=str(e))
        except (ConnectionError, OSError) as e:
            log.debug("Client connection error", error=str(e))
        finally:
            self._writers.discard(writer)
            if stream is not None:
                stream.close()
            writer.close()
            with contextlib.suppress(ConnectionError, OSError):
                await writer.wait_closed()

    async def _handshake(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> tuple[AuthContext, str, int] | None:
        version, nmethods = await reader.readexactly(2)
        if version != SOCKS_VERSION:
            raise SocksProtocolError(f"unsupported SOCKS version {version}")
        methods = await reader.readexactly(nmethods)

        if AUTH_USERNAME_PASSWORD not in methods:
            writer.write(bytes([SOCKS_VERSION, AUTH_NO_ACCEPTABLE]))
            await writer.drain()
            return None
        writer.write(bytes([SOCKS_VERSION, AUTH_USERNAME_PASSWORD]))
        await writer.drain()

        auth = await self._authenticate(reader, writer)

        version, cmd, _, atyp = await reader.readexactly(4)
        if version != SOCKS_VERSION:
            raise SocksProtocolError(f"unsupported SOCKS version {version}")
        try:
            host, port = await read_address(reader, atyp)
        except SocksProtocolError:
            await self._send_reply(writer, Reply.ADDRESS_NOT_SUPPORTED)
            raise

        if cmd != Command.CONNECT:
            await self._send_reply(writer, Reply.COMMAND_NOT_SUPPORTED)
            return None
        return auth, host, port

    async def _authenticate(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> AuthContext:
        version = (await reader.readexactly(1))[0]
        if version != AUTH_VERSION:
            raise SocksProtocolError(f"unsupported auth version {version}")
        ulen = (await reader.readexactly(1))[0]
        username = (await reader.readexactly(ulen)).decode("utf-8", errors="replace")
        plen = (await reader.readexactly(1))[0]
        password = (await reader.readexactly(plen)).decode("utf-8", errors="replace")

        # Credentials carry routing data, so every pair is accepted.
        writer.write(bytes([AUTH_VERSION, AUTH_SUCCESS]))
        await writer.drain()
        return AuthContext(
            method=AUTH_USERNAME_PASSWORD,
            payload={"Username": username, "Password": password},
        )

    async def _send_reply(self, writer: asyncio.StreamWriter, reply: Reply) -> None:
        writer.write(encode_reply(reply))
        await writer.drain()

    async def _relay(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        stream: ForwardedStream,
    ) -> None:
        """Copy both directions until both reach EOF or either one fails."""
        tasks = {
            asyncio.create_task(_pipe(client_reader, stream.writer)),
            asyncio.create_task(_pipe(stream.reader, client_writer)),
        }
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                if task.cancelled():
                    continue
                error = task.exception()
                if error is not None:
                    logger.debug("Relay stream failed", error=str(error))
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)


async def _pipe(src: Any, dst: Any) -> None:
    """Copy ``src`` to ``dst`` and half-close ``dst`` on EOF. Errors propagate."""
    while True:
        data = await src.read(BUFFER_SIZE)
        if not data:
            break
        dst.write(data)
        await dst.drain()
    if dst.can_write_eof():
        dst.write_eof()
