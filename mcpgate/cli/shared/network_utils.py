"""Network helpers for CLI commands."""

from __future__ import annotations

import errno
import socket

_WILDCARD_HOSTS = {"0.0.0.0", "::", ""}


def is_port_in_use(host: str, port: int) -> bool:
    """Return True if host:port is already bound by another process."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                return True
            raise
    return False


def client_host(host: str) -> str:
    """Host a local client should dial when the server binds a wildcard address."""
    return "localhost" if host in _WILDCARD_HOSTS else host


def base_url(host: str, port: int) -> str:
    host = client_host(host)
    if ":" in host:
        host = f"[{host}]"
    return f"http://{host}:{port}"
