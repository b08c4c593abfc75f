"""Loading and watching of the gateway configuration file."""

from __future__ import annotations

import base64
import datetime
import hashlib
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import yaml

__all__ = ["FileLoader", "sha256sum", "make_replace_or_prepend_endpoint_fn"]

log = logging.getLogger(__name__)

_WATCH_INTERVAL = 5.0

OnChange = Callable[[], Any]


def sha256sum(data: bytes) -> str:
    """Hex SHA-256 digest of ``data``."""
    return hashlib.sha256(data).hexdigest()


def _json_key(key: Any) -> str:
    if isinstance(key, bool):
        return "true" if key else "false"
    if key is None:
        return "null"
    return str(key)


def _to_json(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {_json_key(key): _to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    return value


def _read_document(path) -> Dict[str, Any]:
    data = Path(path).read_bytes()
    try:
        document = yaml.safe_load(data)
    except yaml.YAMLError as exc:
        raise ValueError(f"invalid YAML in {path}: {exc}") from exc
    if not isinstance(document, Mapping):
        raise ValueError(f"config {path} is not a mapping")
    return _to_json(document)


def _extension(name: str) -> str:
    dot = name.rfind(".")
    return name[dot:] if dot >= 0 else ""


def _yaml_entries(directory: str) -> List[os.DirEntry]:
    with os.scandir(directory) as entries:
        found = [
            entry
            for entry in entries
            if not entry.is_dir(follow_symlinks=False) and _extension(entry.name) == ".yaml"
        ]
    return sorted(found, key=lambda entry: entry.name)


def _endpoint_key(endpoint: Mapping[str, Any]) -> str:
    return f"{endpoint.get('method', '')}-{endpoint.get('path', '')}"


def make_replace_or_prepend_endpoint_fn(origin):
    """Return a function that replaces an endpoint of ``origin`` or prepends a new one.

    Endpoints are matched by method and path; replacement uses the position the
    endpoint had in ``origin``.
    """
    index = {_endpoint_key(endpoint): position for position, endpoint in enumerate(origin)}

    def replace_or_prepend(dst: List[Dict[str, Any]], item: Dict[str, Any]) -> List[Dict[str, Any]]:
        position = index.get(_endpoint_key(item))
        if position is None:
            return [item, *dst]
        dst[position] = item
        return dst

    return replace_or_prepend


class FileLoader:
    """Loads the gateway config file, merging priority configs, and watches for changes."""

    def __init__(
        self,
        conf_path,
        priority_directory: str = "",
        watch_interval: Optional[float] = _WATCH_INTERVAL,
    ) -> None:
        self._conf_path = str(conf_path)
        self._priority_directory = str(priority_directory or "")
        self._lock = threading.RLock()
        self._handlers: List[OnChange] = []
        self._stop = threading.Event()
        if self._priority_directory:
            os.makedirs(self._priority_directory, mode=0o755, exist_ok=True)
        self._conf_sha256, self._priority_hash = self._digests()
        log.info("the initial config file sha256: %s", self._conf_sha256)
        log.info("the initial priority config file sha256 map: %s", self._priority_hash)
        if watch_interval:
            threading.Thread(target=self._watch_loop, args=(watch_interval,), daemon=True).start()

    def __enter__(self) -> "FileLoader":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _digests(self) -> Tuple[str, Optional[Dict[str, str]]]:
        digest = sha256sum(Path(self._conf_path).read_bytes())
        try:
            priority = self._priority_digests()
        except OSError as exc:
            log.warning("failed to get priority config sha256: %s", exc)
            priority = None
        return digest, priority

    def _priority_digests(self) -> Dict[str, str]:
        if not self._priority_directory:
            return {}
        return {
            entry.name: sha256sum(Path(entry.path).read_bytes())
            for entry in _yaml_entries(self._priority_directory)
        }

    def load(self) -> Dict[str, Any]:
        """Read the config file and merge the priority configs into it."""
        log.info("loading config file: %s", self._conf_path)
        gateway = _read_document(self._conf_path)
        try:
            self._merge_priority_config(gateway)
        except OSError as exc:
            log.warning("failed to merge priority config: %s", exc)
        return gateway

    def _merge_priority_config(self, dst: Dict[str, Any]) -> None:
        if not self._priority_directory:
            return
        entries = _yaml_entries(self._priority_directory)
        endpoints = dst.get("endpoints") or []
        replace_or_prepend = make_replace_or_prepend_endpoint_fn(endpoints)
        merged = False
        for entry in entries:
            try:
                priority = _read_document(entry.path)
            except (OSError, ValueError) as exc:
                log.warning(
                    "failed to parse priority config: %s: %s, skip merge this file", entry.path, exc
                )
                continue
            items = priority.get("endpoints") or []
            for item in items:
                endpoints = replace_or_prepend(endpoints, item)
                merged = True
            log.info(
                "succeeded to merge priority config: %s, %d endpoints effected",
                entry.path,
                len(items),
            )
        if merged:
            dst["endpoints"] = endpoints

    def watch(self, fn: OnChange) -> None:
        """Register a handler run when the config files change."""
        log.info("add config file change event handler")
        with self._lock:
            self._handlers.append(fn)

    def _execute_handlers(self) -> None:
        log.info("execute config loader")
        with self._lock:
            handlers = list(self._handlers)
        last_error: Optional[Exception] = None
        for handler in handlers:
            try:
                handler()
            except Exception as exc:
                log.error("execute config loader error on handler: %r: %s", handler, exc)
                last_error = exc
        if last_error is not None:
            raise RuntimeError(str(last_error)) from last_error

    def check_changes(self) -> bool:
        """Run the handlers if the config changed; return whether a reload happened.

        The stored digests only move forward when every handler succeeds; a failing
        handler raises :class:`RuntimeError`.
        """
        digest, priority = self._digests()
        if digest == self._conf_sha256 and priority == self._priority_hash:
            return False
        log.info(
            "config file changed, reload config, last sha256: %s, new sha256: %s, "
            "last pfHash: %s, new pfHash: %s",
            self._conf_sha256,
            digest,
            self._priority_hash,
            priority,
        )
        self._execute_handlers()
        self._conf_sha256 = digest
        self._priority_hash = priority
        return True

    def _watch_loop(self, interval: float) -> None:
        log.info("start watch config file")
        while not self._stop.wait(interval):
            try:
                self.check_changes()
            except Exception as exc:
                log.error("watch config file error: %s", exc)

    def close(self) -> None:
        """Stop watching the config files."""
        self._stop.set()

    def debug_handler(self) -> Callable:
        """A WSGI application serving ``/debug/config/{inspect,load,version}``."""

        def respond(start_response, status: str, body: bytes, content_type: str):
            start_response(
                status, [("Content-Type", content_type), ("Content-Length", str(len(body)))]
            )
            return [body]

        def as_json(value: Any) -> bytes:
            return (json.dumps(value, separators=(",", ":")) + "\n").encode("utf-8")

        def application(environ, start_response):
            path = environ.get("PATH_INFO", "")
            if path == "/debug/config/inspect":
                with self._lock:
                    handlers = len(self._handlers)
                payload = {
                    "confPath": self._conf_path,
                    "confSha256": self._conf_sha256,
                    "priorityConfigHash": self._priority_hash,
                    "onChangeHandlers": handlers,
                }
                return respond(start_response, "200 OK", as_json(payload), "application/json")
            if path in ("/debug/config/load", "/debug/config/version"):
                try:
                    gateway = self.load()
                except (OSError, ValueError) as exc:
                    return respond(
                        start_response,
                        "500 Internal Server Error",
                        str(exc).encode("utf-8"),
                        "text/plain; charset=utf-8",
                    )
                if path.endswith("/load"):
                    body = json.dumps(gateway, separators=(",", ":")).encode("utf-8")
                else:
                    body = as_json({"version": gateway.get("version", "")})
                return respond(start_response, "200 OK", body, "application/json")
            return respond(
                start_response, "404 Not Found", b"404 page not found\n", "text/plain; charset=utf-8"
            )

        return application