"""bastionproxy - SOCKS5 proxy routing through pooled SSH bastion tunnels."""

__version__ = "0.1.0"
