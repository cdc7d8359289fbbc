"""Per-bastion tunnel with lazy dialing, redial on failure and idle eviction."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any

import structlog

from bastionproxy.core.auth import AuthConfig
from bastionproxy.core.exceptions import ForwardError, TunnelDialError
from bastionproxy.core.identifier import RelayIdentifier, join_host_port
from bastionproxy.core.transport import ForwardedStream, TunnelDialer, TunnelHandle

logger = structlog.get_logger()


class TunnelState(Enum):
    """Lifecycle state of a RelayTunnel."""

    NO_HANDLE = "no_handle"
    DIALING = "dialing"
    ACTIVE = "active"
    FAILED = "failed"


class RelayTunnel:
    """Owns at most one live SSH connection to a single bastion.

    The connection is dialled on the first forward request and shared by every
    later request. A destination that cannot be reached through the current
    connection triggers a redial and another attempt, up to ``retries``
    attempts per request. A failure to dial the bastion itself is returned
    straight away.

    Every forward request pushes the idle deadline out by ``idle_timeout``.
    Each installed handle gets its own watcher task which closes that handle,
    and only that handle, once the deadline passes without a new request.
    """

    def __init__(
        self,
        relay: RelayIdentifier,
        auth: AuthConfig,
        dialer: TunnelDialer,
        retries: int,
    ) -> None:
        if retries < 1:
            raise ValueError(f"retries must be at least 1, got {retries}")

        self.relay = relay
        self._auth = auth
        self._dialer = dialer
        self._retries = retries
        self._logger = logger.bind(relay=relay.key)

        self._handle: TunnelHandle | None = None
        self._watcher: asyncio.Task[None] | None = None
        self._dial_lock = asyncio.Lock()
        self._state = TunnelState.NO_HANDLE
        self._idle_timeout = 0.0
        self._deadline = 0.0

        self._dial_count = 0
        self._forward_count = 0
        self._failure_count = 0
        self._eviction_count = 0

    @property
    def active(self) -> bool:
        return self._handle is not None

    @property
    def state(self) -> TunnelState:
        return self._state

    @property
    def retries(self) -> int:
        return self._retries

    @property
    def handle(self) -> TunnelHandle | None:
        return self._handle

    async def forward_to(self, host: str, port: int, idle_timeout: float) -> ForwardedStream:
        """Open a stream to ``host:port`` through the bastion.

        Raises:
            TunnelDialError: If the bastion could not be dialled.
            ForwardError: The last destination failure once all retries are used.
        """
        self._touch(idle_timeout)

        log = self._logger.bind(destination=join_host_port(host, port))
        stale: TunnelHandle | None = None
        redial = False
        last_error: ForwardError | None = None

        for attempt in range(1, self._retries + 1):
            handle = self._handle
            if handle is None or redial:
                handle = await self._acquire_handle(stale)

            log.debug("Dialling tunnelled connection to destination host", attempt=attempt)
            try:
                stream = await handle.open_stream(host, port)
            except ForwardError as e:
                last_error = e
                self._failure_count += 1
                self._state = TunnelState.FAILED
                log.error(
                    "Error from ssh client dial",
                    retries_left=self._retries - attempt,
                    error=str(e),
                )
                stale = handle
                redial = True
                continue

            if handle is self._handle:
                self._state = TunnelState.ACTIVE
            self._forward_count += 1
            return stream

        if last_error is None:
            raise ForwardError(join_host_port(host, port), "no forward attempts made")
        raise last_error

    async def _acquire_handle(self, stale: TunnelHandle | None) -> TunnelHandle:
        async with self._dial_lock:
            current = self._handle
            if current is not None and current is not stale and not current.is_closed:
                return current

            self._state = TunnelState.DIALING
            self._logger.debug("Dialling SSH connection to bastion")
            try:
                handle = await self._dialer.dial(self.relay, self._auth)
            except TunnelDialError as e:
                self._state = TunnelState.FAILED if self._handle else TunnelState.NO_HANDLE
                self._logger.error("Failed to dial bastion", error=str(e))
                raise

            self._dial_count += 1
            await self._install(handle)
            return handle

    async def _install(self, handle: TunnelHandle) -> None:
        previous = self._handle
        previous_watcher = self._watcher

        self._handle = handle
        self._state = TunnelState.ACTIVE
        self._touch(self._idle_timeout)
        self._watcher = asyncio.create_task(self._watch_idle(handle))

        if previous_watcher is not None:
            previous_watcher.cancel()
        if previous is not None and previous is not handle:
            self._logger.debug("Closing superseded SSH connection to bastion")
            await self._close_handle(previous)

    def _touch(self, idle_timeout: float) -> None:
        loop = asyncio.get_running_loop()
        self._idle_timeout = idle_timeout
        self._deadline = loop.time() + idle_timeout

    async def _watch_idle(self, handle: TunnelHandle) -> None:
        loop = asyncio.get_running_loop()
        while True:
            delay = self._deadline - loop.time()
            if delay <= 0:
                break
            await asyncio.sleep(delay)

        if self._handle is handle:
            self._handle = None
            self._watcher = None
            self._state = TunnelState.NO_HANDLE
        self._eviction_count += 1
        self._logger.debug("Connection idle, closing SSH connection to bastion")
        await self._close_handle(handle)

    async def _close_handle(self, handle: TunnelHandle) -> None:
        try:
            await handle.close()
        except Exception as e:
            self._logger.debug("Error closing SSH connection", error=str(e))

    async def close(self) -> None:
        """Close the live connection, if any. The tunnel may be used again."""
        watcher, self._watcher = self._watcher, None
        handle, self._handle = self._handle, None
        self._state = TunnelState.NO_HANDLE

        if watcher is not None:
            watcher.cancel()
            try:
                await watcher
            except asyncio.CancelledError:
                pass
        if handle is not None:
            await self._close_handle(handle)

    def get_stats(self) -> dict[str, Any]:
        idle_remaining = 0.0
        if self._handle is not None:
            idle_remaining = max(0.0, self._deadline - asyncio.get_running_loop().time())
        return {
            "relay": self.relay.key,
            "active": self.active,
            "state": self._state.value,
            "dial_count": self._dial_count,
            "forward_count": self._forward_count,
            "failure_count": self._failure_count,
            "eviction_count": self._eviction_count,
            "idle_seconds_remaining": idle_remaining,
        }
