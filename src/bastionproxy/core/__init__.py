"""Core."""

from .auth import AuthConfig, AuthProvider, load_auth_config
from .config import ProxyConfig, clear_config, get_config, parse_duration
from .exceptions import AuthSetupError, BastionProxyError, ForwardError, TunnelDialError
from .identifier import RelayIdentifier, join_host_port
from .registry import RelayRegistry, ssh_tunnel_factory
from .transport import (
    ForwardedStream,
    SSHDialer,
    SSHTunnelHandle,
    TunnelDialer,
    TunnelHandle,
)
from .tunnel import RelayTunnel, TunnelState

__all__ = [
    # Auth
    "AuthConfig",
    "AuthProvider",
    "load_auth_config",
    # Config
    "ProxyConfig",
    "clear_config",
    "get_config",
    "parse_duration",
    # Errors
    "AuthSetupError",
    "BastionProxyError",
    "ForwardError",
    "TunnelDialError",
    # Relays
    "RelayIdentifier",
    "join_host_port",
    "RelayRegistry",
    "ssh_tunnel_factory",
    "RelayTunnel",
    "TunnelState",
    # Transport
    "ForwardedStream",
    "SSHDialer",
    "SSHTunnelHandle",
    "TunnelDialer",
    "TunnelHandle",
]
