"""SSH authentication shared by every bastion dial.

The authentication configuration is built once per process from the SSH agent
(``SSH_AUTH_SOCK`` or an explicit socket path) and an optional private key
file. Once built it is only ever read, so tunnels share it without locking.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import Any

import asyncssh
import structlog

from bastionproxy.core.exceptions import AuthSetupError

logger = structlog.get_logger()


@dataclass(frozen=True)
class AuthConfig:
    """Credentials, key material and host verification policy for bastion dials.

    Attributes:
        username: SSH username presented to every bastion.
        agent: Connected SSH agent client, queried for keys on each dial.
        private_key: Optional key loaded from the configured key file.
        known_hosts: known_hosts path, or None to skip host key verification.
    """

    username: str
    agent: Any = None
    private_key: Any = None
    known_hosts: str | None = None

    async def client_keys(self) -> list[Any]:
        """Return the keys offered for public key authentication.

        Agent keys are fetched on every call so keys added to the agent after
        startup are picked up. The key file, if any, is offered last.
        """
        keys: list[Any] = []
        if self.agent is not None:
            try:
                keys.extend(await self.agent.get_keys())
            except (OSError, asyncssh.Error) as e:
                logger.warning("Failed to list SSH agent keys", error=str(e))
        if self.private_key is not None:
            keys.append(self.private_key)
        return keys

    async def connect_options(self) -> dict[str, Any]:
        """Keyword arguments for :func:`asyncssh.connect`."""
        return {
            "username": self.username,
            "client_keys": await self.client_keys(),
            "agent_path": None,
            "known_hosts": self.known_hosts,
        }


async def load_auth_config(
    username: str,
    key_file: str | None = None,
    agent_path: str | None = None,
    known_hosts: str | None = None,
) -> AuthConfig:
    """Connect to the SSH agent and load the optional key file.

    Raises:
        AuthSetupError: If the agent socket is unreachable or the key file
            cannot be read or parsed.
    """
    socket_path = agent_path or os.environ.get("SSH_AUTH_SOCK", "")
    if not socket_path:
        raise AuthSetupError("Failed to open SSH_AUTH_SOCK: variable not set")

    try:
        agent = await asyncssh.connect_agent(socket_path)
    except (OSError, asyncssh.Error) as e:
        raise AuthSetupError(f"Failed to open SSH_AUTH_SOCK: {e}") from e
    if agent is None:
        raise AuthSetupError(f"Failed to open SSH_AUTH_SOCK: no agent at {socket_path}")

    private_key = None
    if key_file:
        try:
            private_key = asyncssh.read_private_key(key_file)
        except OSError as e:
            agent.close()
            raise AuthSetupError(f"open ssh key {key_file} failed: {e}") from e
        except asyncssh.KeyImportError as e:
            agent.close()
            raise AuthSetupError(f"parse ssh key failed: {e}") from e

    return AuthConfig(
        username=username,
        agent=agent,
        private_key=private_key,
        known_hosts=known_hosts,
    )


class AuthProvider:
    """Builds the process-wide AuthConfig on first use and caches it.

    A failed build is not cached, so a later relay registration retries it.
    """

    def __init__(
        self,
        username: str,
        key_file: str | None = None,
        agent_path: str | None = None,
        known_hosts: str | None = None,
    ) -> None:
        self._username = username
        self._key_file = key_file
        self._agent_path = agent_path
        self._known_hosts = known_hosts
        self._auth: AuthConfig | None = None
        self._lock = asyncio.Lock()

    async def get(self) -> AuthConfig:
        if self._auth is not None:
            return self._auth
        async with self._lock:
            if self._auth is None:
                self._auth = await load_auth_config(
                    self._username,
                    key_file=self._key_file,
                    agent_path=self._agent_path,
                    known_hosts=self._known_hosts,
                )
                logger.debug(
                    "SSH authentication loaded",
                    user=self._username,
                    key_file=self._key_file,
                )
            return self._auth

    async def close(self) -> None:
        if self._auth is not None and self._auth.agent is not None:
            self._auth.agent.close()
            await self._auth.agent.wait_closed()
        self._auth = None
