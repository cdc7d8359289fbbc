"""SOCKS5 frontend and proxy wiring."""

from bastionproxy.server.proxy import BastionProxy, log_status, status_reporter
from bastionproxy.server.socks import AuthContext, Reply, SocksServer, reply_for_error

__all__ = [
    "AuthContext",
    "BastionProxy",
    "Reply",
    "SocksServer",
    "log_status",
    "reply_for_error",
    "status_reporter",
]
