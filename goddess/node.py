"""Backend nodes and the HTTP clients used to reach them."""

from __future__ import annotations

import functools
import logging
import os
import ssl
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import httpx

from goddess.durations import parse_duration

__all__ = [
    "Protocol",
    "TLSSettings",
    "Node",
    "HTTPSClientStore",
    "build_ssl_context",
    "new_node",
]

log = logging.getLogger(__name__)

_DEFAULT_DIAL_TIMEOUT = 0.2
_MAX_REDIRECTS = 10
_LIMITS = httpx.Limits(
    max_connections=10000,
    max_keepalive_connections=10000,
    keepalive_expiry=90.0,
)


class Protocol(str, Enum):
    """Protocol spoken to a backend."""

    UNSPECIFIED = "UNSPECIFIED"
    HTTP = "HTTP"
    GRPC = "GRPC"


@dataclass
class TLSSettings:
    """PEM material and options for one named TLS configuration."""

    cert: str = ""
    key: str = ""
    cacert: str = ""
    server_name: str = ""
    insecure: bool = False


class _ServerNameContext(ssl.SSLContext):
    """SSL context that can force the server name used for SNI and verification."""

    server_name: str = ""

    def wrap_socket(self, sock, *args, server_hostname=None, **kwargs):
        return super().wrap_socket(
            sock, *args, server_hostname=self.server_name or server_hostname, **kwargs
        )

    def wrap_bio(self, incoming, outgoing, *args, server_hostname=None, **kwargs):
        return super().wrap_bio(
            incoming,
            outgoing,
            *args,
            server_hostname=self.server_name or server_hostname,
            **kwargs,
        )


def build_ssl_context(settings: TLSSettings) -> ssl.SSLContext:
    """Build a client SSL context; raises :class:`ssl.SSLError` on bad PEM data."""
    context = _ServerNameContext(ssl.PROTOCOL_TLS_CLIENT)
    context.server_name = settings.server_name
    if settings.insecure:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    with tempfile.TemporaryDirectory() as directory:
        cert_path = Path(directory, "cert.pem")
        key_path = Path(directory, "key.pem")
        cert_path.write_text(settings.cert)
        key_path.write_text(settings.key)
        context.load_cert_chain(str(cert_path), str(key_path))
    if settings.cacert:
        context.load_verify_locations(cadata=settings.cacert)
    else:
        context.load_default_certs()
    return context


def _dial_timeout() -> float:
    value = os.environ.get("PROXY_DIAL_TIMEOUT")
    if not value:
        return _DEFAULT_DIAL_TIMEOUT
    return parse_duration(value).total_seconds()


def _follow_redirect() -> bool:
    return bool(os.environ.get("PROXY_FOLLOW_REDIRECT"))


def _make_client(verify: Any = True, *, http1: bool = True, http2: bool = False) -> httpx.Client:
    options = dict(
        verify=verify,
        follow_redirects=_follow_redirect(),
        max_redirects=_MAX_REDIRECTS,
        limits=_LIMITS,
        timeout=httpx.Timeout(None, connect=_dial_timeout()),
        trust_env=True,
    )
    if not http2:
        return httpx.Client(**options)
    try:
        return httpx.Client(http1=http1, http2=True, **options)
    except ImportError:
        log.warning("HTTP/2 support is unavailable, falling back to HTTP/1.1")
        return httpx.Client(**options)


@functools.lru_cache(maxsize=None)
def _default_client() -> httpx.Client:
    return _make_client()


@functools.lru_cache(maxsize=None)
def _h2c_client() -> httpx.Client:
    return _make_client(http1=False, http2=True)


@functools.lru_cache(maxsize=None)
def _default_https_client() -> httpx.Client:
    return _make_client(http2=True)


class HTTPSClientStore:
    """Lazily builds and caches one HTTPS client per named TLS configuration."""

    def __init__(self, client_configs: Optional[Mapping[str, ssl.SSLContext]] = None) -> None:
        self._configs: Dict[str, ssl.SSLContext] = dict(client_configs or {})
        self._clients: Dict[str, httpx.Client] = {}

    def get_client(self, name: str) -> httpx.Client:
        """Return the client for ``name``; unknown names fall back to the default HTTPS client."""
        if not name:
            return _default_client()
        client = self._clients.get(name)
        if client is not None:
            return client
        context = self._configs.get(name)
        if context is None:
            log.warning("tls config not found for %s, using default instead", name)
            return _default_https_client()
        client = _make_client(context, http2=True)
        self._clients[name] = client
        return client


@dataclass
class Node:
    """One backend instance that requests can be sent to."""

    address: str
    protocol: Protocol = Protocol.HTTP
    name: str = ""
    weight: Optional[int] = None
    version: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)
    client: Optional[httpx.Client] = field(default=None, repr=False, compare=False)
    tls: bool = False

    def scheme(self) -> str:
        """The protocol name in lower case."""
        return self.protocol.value.lower()


def new_node(
    build_context,
    address: str,
    protocol: Protocol,
    weight: Optional[int] = None,
    metadata: Optional[Mapping[str, str]] = None,
    version: str = "",
    name: str = "",
    tls: bool = False,
    tls_config_name: str = "",
) -> Node:
    """Create a node and attach the client suited to its protocol and TLS settings."""
    node = Node(
        address=address,
        protocol=protocol,
        name=name,
        weight=weight,
        version=version,
        metadata=dict(metadata or {}),
    )
    node.client = _h2c_client() if protocol == Protocol.GRPC else _default_client()
    if tls:
        node.tls = True
        node.client = _default_https_client()
        if tls_config_name:
            node.client = build_context.tls_client_store.get_client(tls_config_name)
    return node