"""Shared service discovery watchers that fan updates out to appliers."""

from __future__ import annotations

import json
import logging
import os
import queue
import threading
import time
import uuid
import zlib
from concurrent.futures import CancelledError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import parse_qs

from goddess.durations import parse_duration

__all__ = [
    "CancelWatch",
    "ServiceInstance",
    "ServiceWatcher",
    "instances_set_hash",
    "add_watch",
]

log = logging.getLogger(__name__)

_RETRY_DELAY = 1.0
_CLEANUP_INTERVAL = 30.0


class CancelWatch(Exception):
    """Raised by an applier that no longer wants updates."""

    def __init__(self, message: str = "cancel watch") -> None:
        super().__init__(message)


def _initial_resolve_timeout_from_env() -> float:
    value = os.environ.get("INITIAL_RESOLVE_TIMEOUT")
    if not value:
        return 0.0
    try:
        return parse_duration(value).total_seconds()
    except ValueError as exc:
        log.error("Failed to parse INITIAL_RESOLVE_TIMEOUT: %s, err: %s", value, exc)
        return 0.0


_INITIAL_RESOLVE_TIMEOUT = _initial_resolve_timeout_from_env()


@dataclass
class ServiceInstance:
    """An instance reported by service discovery."""

    id: str
    name: str = ""
    version: str = ""
    metadata: Optional[Dict[str, str]] = None
    endpoints: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Return the JSON representation, metadata keys sorted."""
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "metadata": None if self.metadata is None else dict(sorted(self.metadata.items())),
            "endpoints": None if self.endpoints is None else list(self.endpoints),
        }


def _encode_json(value: Any) -> str:
    text = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    for raw, escaped in (
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("&", "\\u0026"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        text = text.replace(raw, escaped)
    return text


def instances_set_hash(instances: Iterable[ServiceInstance]) -> str:
    """CRC32 of the instances' JSON, ordered by id, as a decimal string."""
    ordered = sorted(instances, key=lambda instance: instance.id)
    payload = _encode_json([instance.to_dict() for instance in ordered])
    return str(zlib.crc32(payload.encode("utf-8")))


@dataclass
class _WatcherStatus:
    watcher: Any
    initialized: threading.Event = field(default_factory=threading.Event)
    selected: List[ServiceInstance] = field(default_factory=list)


def _notify(applier, endpoint: str, services: List[ServiceInstance]) -> None:
    try:
        applier.callback(services)
    except CancelWatch:
        log.warning("applier on endpoint: %s is canceled", endpoint)
    except Exception as exc:
        log.error("Failed to call applier on endpoint: %r: %s", endpoint, exc)


class ServiceWatcher:
    """One discovery watch per endpoint, shared by every applier of that endpoint.

    A discovery exposes ``watch(endpoint)`` returning a watcher whose ``next()``
    blocks until the next instance list and raises
    :class:`concurrent.futures.CancelledError` once the watch is over. An applier
    exposes ``callback(services)`` and ``canceled()``.
    """

    def __init__(
        self,
        initial_resolve_timeout: Optional[float] = None,
        cleanup_interval: Optional[float] = _CLEANUP_INTERVAL,
    ) -> None:
        self._lock = threading.RLock()
        self._status: Dict[str, _WatcherStatus] = {}
        self._appliers: Dict[str, Dict[str, Any]] = {}
        self._initial_resolve_timeout = (
            _INITIAL_RESOLVE_TIMEOUT if initial_resolve_timeout is None else initial_resolve_timeout
        )
        if cleanup_interval:
            threading.Thread(
                target=self._cleanup_loop, args=(cleanup_interval,), daemon=True
            ).start()

    def selected_instances(self, endpoint: str) -> Optional[List[ServiceInstance]]:
        """The last instance list seen on ``endpoint``, or ``None`` if not watched."""
        with self._lock:
            status = self._status.get(endpoint)
            return None if status is None else list(status.selected)

    def appliers(self, endpoint: str) -> Optional[Dict[str, Any]]:
        """The appliers registered on ``endpoint`` by id, or ``None``."""
        with self._lock:
            appliers = self._appliers.get(endpoint)
            return None if appliers is None else dict(appliers)

    def add(self, discovery, endpoint: str, applier) -> bool:
        """Attach ``applier`` to ``endpoint``; return whether a watcher already existed."""
        with self._lock:
            existed = self._attach(discovery, endpoint, applier)
            log.info("Add appliers on endpoint: %s", endpoint)
            if applier is not None:
                self._appliers.setdefault(endpoint, {})[str(uuid.uuid4())] = applier
        return existed

    def _attach(self, discovery, endpoint: str, applier) -> bool:
        status = self._status.get(endpoint)
        if status is not None:
            status.initialized.wait()
            if status.selected and applier is not None:
                log.info(
                    "Using cached %d selected instances on endpoint: %s, hash: %s",
                    len(status.selected),
                    endpoint,
                    instances_set_hash(status.selected),
                )
                _notify(applier, endpoint, status.selected)
            return True

        try:
            watcher = discovery.watch(endpoint)
        except Exception as exc:
            log.error("Failed to initialize watcher on endpoint: %s, err: %s", endpoint, exc)
            return False
        log.info("Succeeded to initialize watcher on endpoint: %s", endpoint)
        status = _WatcherStatus(watcher=watcher)
        self._status[endpoint] = status

        try:
            services = self._initial_resolve(endpoint, watcher)
            status.selected = services
            if applier is not None:
                _notify(applier, endpoint, services)
        finally:
            status.initialized.set()

        threading.Thread(target=self._watch_loop, args=(endpoint, watcher), daemon=True).start()
        return False

    def _initial_resolve(self, endpoint: str, watcher) -> List[ServiceInstance]:
        log.info("Starting to do initialize services discovery on endpoint: %s", endpoint)
        results: "queue.Queue[Optional[List[ServiceInstance]]]" = queue.Queue(maxsize=1)

        def resolve() -> None:
            try:
                services = watcher.next()
            except BaseException as exc:
                log.error(
                    "Failed to do initialize services discovery on endpoint: %s, err: %s, "
                    "the watch process will attempt asynchronously",
                    endpoint,
                    exc,
                )
                results.put(None)
                return
            log.info(
                "Succeeded to do initialize services discovery on endpoint: %s, %d services",
                endpoint,
                len(services),
            )
            results.put(list(services))

        threading.Thread(target=resolve, daemon=True).start()
        timeout = self._initial_resolve_timeout if self._initial_resolve_timeout > 0 else None
        try:
            services = results.get(timeout=timeout)
        except queue.Empty:
            log.warning(
                "Initial resolve timeout on endpoint: %s, will attempt asynchronously", endpoint
            )
            return []
        return services or []

    def _watch_loop(self, endpoint: str, watcher) -> None:
        while True:
            try:
                services = list(watcher.next())
            except CancelledError:
                log.warning("The watch process on: %s has been canceled", endpoint)
                return
            except Exception as exc:
                log.error(
                    "Failed to watch on endpoint: %s, err: %s, "
                    "the watch process will attempt again after %s seconds",
                    endpoint,
                    exc,
                    _RETRY_DELAY,
                )
                time.sleep(_RETRY_DELAY)
                continue
            if not services:
                log.warning(
                    "Empty services on endpoint: %s, "
                    "this most likely no available instance in discovery",
                    endpoint,
                )
                continue
            log.info(
                "Received %d services on endpoint: %s, hash: %s",
                len(services),
                endpoint,
                instances_set_hash(services),
            )
            with self._lock:
                self._status[endpoint].selected = services
            self.do_callback(endpoint, services)

    def do_callback(self, endpoint: str, services: List[ServiceInstance]) -> int:
        """Deliver ``services`` to every applier; return how many asked to cancel."""
        canceled = 0
        with self._lock:
            appliers = list(self._appliers.get(endpoint, {}).items())
            for applier_id, applier in appliers:
                try:
                    applier.callback(services)
                except CancelWatch:
                    canceled += 1
                    log.warning(
                        "appliers on endpoint: %s, id: %s is canceled, will delete later",
                        endpoint,
                        applier_id,
                    )
                except Exception as exc:
                    log.error("Failed to call appliers on endpoint: %r: %s", endpoint, exc)
        if canceled:
            log.warning(
                "There are %d canceled appliers on endpoint: %r, "
                "will be deleted later in cleanup proc",
                canceled,
                endpoint,
            )
        return canceled

    def cleanup(self) -> int:
        """Drop canceled appliers on every endpoint; return how many were removed."""
        removed = 0
        with self._lock:
            for endpoint, appliers in self._appliers.items():
                stale = [key for key, applier in appliers.items() if applier.canceled()]
                if not stale:
                    continue
                log.info("Cleanup appliers on endpoint: %r with keys: %s", endpoint, stale)
                for key in stale:
                    del appliers[key]
                removed += len(stale)
                log.info(
                    "Succeeded to clean %d appliers on endpoint: %r, now %d appliers are available",
                    len(stale),
                    endpoint,
                    len(appliers),
                )
        return removed

    def _cleanup_loop(self, interval: float) -> None:
        while True:
            log.info("Start to cleanup appliers on all endpoints for every %ss", interval)
            time.sleep(interval)
            self.cleanup()

    def debug_handler(self) -> Callable:
        """A WSGI application serving ``/debug/watcher/nodes`` and ``/debug/watcher/appliers``."""

        def application(environ, start_response):
            path = environ.get("PATH_INFO", "")
            query = parse_qs(environ.get("QUERY_STRING", ""))
            service = query.get("service", [""])[0]
            if path == "/debug/watcher/nodes":
                instances = self.selected_instances(service)
                payload = None if instances is None else [i.to_dict() for i in instances]
            elif path == "/debug/watcher/appliers":
                appliers = self.appliers(service)
                payload = (
                    None if appliers is None else {key: {} for key in sorted(appliers)}
                )
            else:
                body = b"404 page not found\n"
                start_response(
                    "404 Not Found",
                    [
                        ("Content-Type", "text/plain; charset=utf-8"),
                        ("Content-Length", str(len(body))),
                    ],
                )
                return [body]
            body = (_encode_json(payload) + "\n").encode("utf-8")
            start_response(
                "200 OK",
                [("Content-Type", "application/json"), ("Content-Length", str(len(body)))],
            )
            return [body]

        return application


_global_watcher: Optional[ServiceWatcher] = None
_global_lock = threading.Lock()


def _watcher() -> ServiceWatcher:
    global _global_watcher
    with _global_lock:
        if _global_watcher is None:
            _global_watcher = ServiceWatcher()
        return _global_watcher


def add_watch(discovery, endpoint: str, applier) -> bool:
    """Attach ``applier`` to ``endpoint`` on the process-wide watcher."""
    return _watcher().add(discovery, endpoint, applier)