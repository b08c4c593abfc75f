"""Service clients that pick a backend node for every proxied request."""

from __future__ import annotations

import logging
import re
import ssl
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from goddess.node import (
    HTTPSClientStore,
    Node,
    Protocol,
    TLSSettings,
    build_ssl_context,
    new_node,
)
from goddess.servicewatch import CancelWatch, ServiceInstance, add_watch
from goddess.target import parse_endpoint, parse_target

__all__ = [
    "BuildContext",
    "WeightedPicker",
    "NodeApplier",
    "Client",
    "empty_build_context",
    "new_build_context",
    "node_weight",
    "new_factory",
]

log = logging.getLogger(__name__)

_DEFAULT_WEIGHT = 10
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_DECIMAL = re.compile(r"[+-]?[0-9]+")


def _get(mapping: Mapping[str, Any], camel: str, snake: str) -> Any:
    value = mapping.get(camel)
    return mapping.get(snake) if value is None else value


@dataclass
class BuildContext:
    """Named TLS configurations and the HTTPS clients built from them."""

    tls_configs: Dict[str, ssl.SSLContext] = field(default_factory=dict)
    tls_client_store: HTTPSClientStore = field(default_factory=HTTPSClientStore)


def empty_build_context() -> BuildContext:
    """A build context without any TLS configuration."""
    return BuildContext()


def new_build_context(gateway: Mapping[str, Any]) -> BuildContext:
    """Build SSL contexts for every entry of the gateway's TLS store.

    Entries whose certificate material cannot be loaded are skipped with a warning.
    """
    contexts: Dict[str, ssl.SSLContext] = {}
    store = _get(gateway, "tlsStore", "tls_store") or {}
    for name, raw in store.items():
        settings = TLSSettings(
            cert=raw.get("cert", "") or "",
            key=raw.get("key", "") or "",
            cacert=raw.get("cacert", "") or "",
            server_name=_get(raw, "serverName", "server_name") or "",
            insecure=bool(raw.get("insecure", False)),
        )
        try:
            contexts[name] = build_ssl_context(settings)
        except (ssl.SSLError, ValueError, OSError) as exc:
            log.warning("failed to load tls config: %r: %s", name, exc)
    return BuildContext(tls_configs=contexts, tls_client_store=HTTPSClientStore(contexts))


def node_weight(instance: ServiceInstance) -> int:
    """The ``weight`` metadata of an instance, or the default when absent or not positive."""
    raw = (instance.metadata or {}).get("weight")
    if raw is None:
        return _DEFAULT_WEIGHT
    value = 0
    if _DECIMAL.fullmatch(raw):
        value = min(max(int(raw), _INT64_MIN), _INT64_MAX)
    return value if value > 0 else _DEFAULT_WEIGHT


def _protocol(value: Any) -> Protocol:
    if isinstance(value, Protocol):
        return value
    if not value:
        return Protocol.UNSPECIFIED
    return Protocol(str(value).upper())


def _backend_weight(value: Any) -> Optional[int]:
    if value is None:
        return None
    return int(value)


@dataclass
class _Entry:
    node: Node
    weight: int
    current: int = 0


class WeightedPicker:
    """Smooth weighted round-robin over the current set of nodes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: List[_Entry] = []

    def apply(self, nodes) -> None:
        """Replace the set of nodes to pick from."""
        entries = [
            _Entry(node, node.weight if node.weight and node.weight > 0 else _DEFAULT_WEIGHT)
            for node in nodes
        ]
        with self._lock:
            self._entries = entries

    def select(self) -> Node:
        """Pick the next node; raises :class:`LookupError` when there is none."""
        with self._lock:
            if not self._entries:
                raise LookupError("no available node")
            total = 0
            best: Optional[_Entry] = None
            for entry in self._entries:
                entry.current += entry.weight
                total += entry.weight
                if best is None or entry.current > best.current:
                    best = entry
            best.current -= total
            return best.node


class NodeApplier:
    """Feeds the nodes of one endpoint's backends into a picker."""

    def __init__(self, build_context: BuildContext, endpoint: Mapping[str, Any], discovery, picker) -> None:
        self.build_context = build_context
        self.endpoint = endpoint
        self.discovery = discovery
        self.picker = picker
        self._canceled = threading.Event()

    @property
    def protocol(self) -> Protocol:
        return _protocol(self.endpoint.get("protocol"))

    def apply(self) -> None:
        """Resolve every backend: direct targets become nodes, discovery targets are watched."""
        nodes: List[Node] = []
        for backend in self.endpoint.get("backends") or []:
            target_text = backend.get("target", "")
            target = parse_target(target_text)
            if target.scheme == "direct":
                nodes.append(
                    new_node(
                        self.build_context,
                        target_text,
                        self.protocol,
                        _backend_weight(backend.get("weight")),
                        backend.get("metadata") or {},
                        "",
                        "",
                        tls=bool(backend.get("tls", False)),
                        tls_config_name=_get(backend, "tlsConfigName", "tls_config_name") or "",
                    )
                )
                self.picker.apply(list(nodes))
            elif target.scheme == "discovery":
                if add_watch(self.discovery, target.endpoint, self):
                    log.info("watch target %s already existed", target)
            else:
                raise ValueError(f"unknown scheme: {target.scheme}")

    def callback(self, services) -> None:
        """Replace the picker's nodes with the discovered instances."""
        if self.canceled():
            raise CancelWatch()
        if not services:
            return
        protocol = self.protocol
        scheme = protocol.value.lower()
        nodes: List[Node] = []
        for service in services:
            endpoints = service.endpoints or []
            try:
                address = parse_endpoint(endpoints, scheme, False)
            except ValueError as exc:
                log.error("failed to parse endpoint: %s/%s: %s", endpoints, scheme, exc)
                continue
            if not address:
                log.error("failed to parse endpoint: %s/%s: no matching endpoint", endpoints, scheme)
                continue
            nodes.append(
                new_node(
                    self.build_context,
                    address,
                    protocol,
                    node_weight(service),
                    service.metadata or {},
                    service.version,
                    service.name,
                    tls=False,
                )
            )
        self.picker.apply(nodes)

    def cancel(self) -> None:
        log.info("Closing node applier for endpoint: %s", self.endpoint)
        self._canceled.set()

    def canceled(self) -> bool:
        return self._canceled.is_set()


class Client(httpx.BaseTransport):
    """Transport that sends each request to a node chosen by the picker."""

    def __init__(self, applier: NodeApplier, picker) -> None:
        self._applier = applier
        self._picker = picker

    def pick(self) -> Node:
        """Choose the node for the next request."""
        return self._picker.select()

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        node = self.pick()
        address = node.address
        scheme = "https" if node.tls else "http"
        request.url = request.url.copy_with(scheme=scheme, netloc=address.encode("ascii"))
        if node.tls:
            request.headers["Host"] = address
        host = node.metadata.get("host")
        if host:
            request.headers["Host"] = host
        started = time.monotonic()
        try:
            upstream = node.client.send(request, stream=True)
        except httpx.HTTPError as exc:
            log.debug("upstream %s failed after %.3fs: %s", address, time.monotonic() - started, exc)
            raise
        try:
            content = b"".join(upstream.iter_raw())
        finally:
            upstream.close()
        log.debug(
            "upstream %s answered %d in %.3fs",
            address,
            upstream.status_code,
            time.monotonic() - started,
        )
        return httpx.Response(
            upstream.status_code,
            headers=upstream.headers,
            content=content,
            request=request,
        )

    def close(self) -> None:
        """Stop receiving node updates for this client."""
        self._applier.cancel()


Factory = Callable[[BuildContext, Mapping[str, Any]], Client]


def new_factory(discovery, picker_builder: Optional[Callable[[], Any]] = None) -> Factory:
    """Return a function building a :class:`Client` for an endpoint configuration."""
    builder = picker_builder or WeightedPicker

    def factory(build_context: BuildContext, endpoint: Mapping[str, Any]) -> Client:
        picker = builder()
        applier = NodeApplier(build_context, endpoint, discovery, picker)
        applier.apply()
        return Client(applier, picker)

    return factory