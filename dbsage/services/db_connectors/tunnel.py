"""
SOCKS5 Tunnel
=============

Opens the TCP socket a connector's DB driver talks over: either straight to
the target, or through the configured SOCKS5 proxy so customer firewalls
only need to allow the proxy's fixed egress address.
"""

import logging
import socket
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote, urlparse

import socks

from dbsage.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_SOCKS_PORT = 1080


@dataclass(frozen=True)
class TunnelEndpoint:
    host: str
    port: int = DEFAULT_SOCKS_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    remote_dns: bool = True

    @classmethod
    def from_url(cls, url: str) -> "TunnelEndpoint":
        """Parse socks5://[user:pass@]host[:port] (socks5h resolves remotely too)."""
        parsed = urlparse(url)
        if parsed.scheme not in ("socks5", "socks5h"):
            raise ConfigurationError(detail=f"unsupported tunnel scheme {parsed.scheme!r}")
        if not parsed.hostname:
            raise ConfigurationError(detail="tunnel URL has no host")
        try:
            port = parsed.port or DEFAULT_SOCKS_PORT
        except ValueError:
            raise ConfigurationError(detail="tunnel URL has an invalid port")
        return cls(
            host=parsed.hostname,
            port=port,
            username=unquote(parsed.username) if parsed.username else None,
            password=unquote(parsed.password) if parsed.password else None,
        )

    def describe(self) -> str:
        return f"socks5://{self.host}:{self.port}"


def tunnel_from_settings(url: Optional[str]) -> Optional[TunnelEndpoint]:
    return TunnelEndpoint.from_url(url) if url else None


def open_socket(
    host: str,
    port: int,
    tunnel: Optional[TunnelEndpoint] = None,
    timeout: float = 5.0,
) -> socket.socket:
    """Connect a TCP socket to host:port, through the tunnel when given.

    Raises OSError (socks.ProxyError is one) when the target or proxy is
    unreachable.
    """
    if tunnel is None:
        return socket.create_connection((host, port), timeout=timeout)

    logger.debug("Dialing %s:%d via %s", host, port, tunnel.describe())
    return socks.create_connection(
        (host, port),
        timeout=timeout,
        proxy_type=socks.SOCKS5,
        proxy_addr=tunnel.host,
        proxy_port=tunnel.port,
        proxy_rdns=tunnel.remote_dns,
        proxy_username=tunnel.username,
        proxy_password=tunnel.password,
    )
