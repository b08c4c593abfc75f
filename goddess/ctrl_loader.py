"""Pulls gateway configuration and feature flags from a control service."""

from __future__ import annotations

import json
import logging
import os
import posixpath
import random
import socket
import struct
import threading
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx
import yaml

__all__ = [
    "FeatureRegistry",
    "NotModified",
    "CtrlConfigLoader",
    "prepare_ctrl_service",
    "PRIORITY_CONFIG_FEATURE",
]

log = logging.getLogger(__name__)

PRIORITY_CONFIG_FEATURE = "gw:PriorityConfig"

_RELEASE_PATH = "/v1/control/gateway/release"
_FEATURES_PATH = "/v1/control/gateway/features"
_POLL_INTERVAL = 5.0

_SIOCGIFFLAGS = 0x8913
_SIOCGIFADDR = 0x8915
_IFF_UP = 0x1


class FeatureRegistry:
    """Named on/off switches that the control service may toggle."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._flags: Dict[str, bool] = {}

    def register(self, name: str, default: bool = False) -> None:
        """Declare a feature; declaring the same name twice raises :class:`ValueError`."""
        with self._lock:
            if name in self._flags:
                raise ValueError(f"feature {name} already registered")
            self._flags[name] = bool(default)

    def set_enabled(self, name: str, enabled: bool) -> bool:
        """Switch a declared feature; return ``False`` for unknown names."""
        with self._lock:
            if name not in self._flags:
                return False
            self._flags[name] = bool(enabled)
            return True

    def enabled(self, name: str) -> bool:
        """Whether the feature is on; unknown features are off."""
        with self._lock:
            return self._flags.get(name, False)


_global_features = FeatureRegistry()
_global_features.register(PRIORITY_CONFIG_FEATURE, False)


class NotModified(Exception):
    """The control service reports that the configuration is unchanged."""

    def __init__(self, message: str = "config not modified") -> None:
        super().__init__(message)


def _normalize_url(raw: str) -> str:
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in raw):
        raise ValueError(f"invalid control character in URL: {raw!r}")
    parts = urlsplit(raw)
    parts.port  # validates the port
    return parts.geturl()


def prepare_ctrl_service(raw: str) -> List[str]:
    """Split a comma separated list of control service URLs, drop invalid ones and shuffle."""
    services: List[str] = []
    for part in raw.split(","):
        try:
            services.append(_normalize_url(part))
        except ValueError as exc:
            log.warning(
                "Failed to parse control service url %s: %s, will skip this one", part, exc
            )
    if not services:
        log.warning("No control service url found, control service will not be available")
    random.shuffle(services)
    return services


def _join_path(*elements: str) -> str:
    joined = "/".join(element for element in elements if element)
    if not joined:
        return ""
    return posixpath.normpath(joined).replace("//", "/")


def _json_to_yaml(text: str) -> bytes:
    value = json.loads(text) if text.strip() else None
    return yaml.safe_dump(value, default_flow_style=False, allow_unicode=True).encode("utf-8")


def _decode_object(body: bytes) -> Dict[str, Any]:
    data = json.loads(body)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("control service response is not a JSON object")
    return data


def _string_field(mapping: Mapping[str, Any], key: str) -> str:
    value = mapping.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string")
    return value


def _interface_ipv4(name: str) -> str:
    try:
        import fcntl
    except ImportError as exc:
        raise OSError("interface lookup is not supported on this platform") from exc
    if name not in {ifname for _, ifname in socket.if_nameindex()}:
        raise OSError("interface not found")
    request = struct.pack("256s", name.encode("utf-8")[:15])
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        flags = struct.unpack("H", fcntl.ioctl(sock.fileno(), _SIOCGIFFLAGS, request)[16:18])[0]
        if not flags & _IFF_UP:
            raise OSError("interfaces is down")
        try:
            packed = fcntl.ioctl(sock.fileno(), _SIOCGIFADDR, request)[20:24]
        except OSError as exc:
            raise OSError("interfaces does not have a valid IPv4") from exc
    address = socket.inet_ntoa(packed)
    if address.startswith("127."):
        raise OSError("interfaces does not have a valid IPv4")
    return address


class CtrlConfigLoader:
    """Downloads the gateway config into local files and applies feature switches.

    Failed loads rotate to the next control service on the following attempt.
    """

    def __init__(
        self,
        name: str,
        raw_ctrl_service: str,
        dst_path,
        dst_priority_config_dir="",
        *,
        http_client: Optional[httpx.Client] = None,
        features: Optional[FeatureRegistry] = None,
        advertise_addr: Optional[str] = None,
        poll_interval: float = _POLL_INTERVAL,
    ) -> None:
        self.ctrl_service = prepare_ctrl_service(raw_ctrl_service)
        self.dst_path = str(dst_path)
        self.dst_priority_config_dir = str(dst_priority_config_dir or "")
        self.advertise_name = name
        self.poll_interval = poll_interval
        self.last_version = ""
        self.last_priority_version: Optional[Dict[str, str]] = None
        self._ctrl_service_idx = 0
        self._next_ctrl_service = False
        self._http = http_client if http_client is not None else httpx.Client(timeout=None)
        self._features = features if features is not None else _global_features
        self.advertise_addr = (
            advertise_addr if advertise_addr is not None else self._detect_advertise_addr()
        )

    def _detect_advertise_addr(self) -> str:
        address = os.environ.get("ADVERTISE_ADDR", "")
        if address:
            return address
        device = os.environ.get("ADVERTISE_DEVICE", "") or "eth0"
        try:
            address = _interface_ipv4(device)
        except OSError as exc:
            log.error("%r There was a problem with the IP %s", self.advertise_name, exc)
            return ""
        log.info("%s uses IP %s", self.advertise_name, address)
        return address

    def _chose_ctrl_service(self) -> str:
        if not self.ctrl_service:
            raise LookupError("no control service available")
        if self._next_ctrl_service:
            self._ctrl_service_idx = (self._ctrl_service_idx + 1) % len(self.ctrl_service)
            self._next_ctrl_service = False
        return self.ctrl_service[self._ctrl_service_idx]

    def _url_for(self, upath: str, params: Mapping[str, str]) -> str:
        parts = urlsplit(self._chose_ctrl_service())
        path = _join_path(parts.path, upath)
        query = urlencode(sorted(params.items()))
        return urlunsplit((parts.scheme, parts.netloc, path, query, parts.fragment))

    def _fetch(self, upath: str, params: Mapping[str, str]) -> bytes:
        log.info(
            "%s is requesting %s from %s with params: %s",
            self.advertise_name,
            upath,
            self.ctrl_service,
            dict(params),
        )
        response = self._http.get(self._url_for(upath, params))
        if response.status_code == 304:
            raise NotModified()
        if response.status_code != 200:
            raise RuntimeError(f"invalid status code: {response.status_code}")
        return response.content

    def _base_params(self) -> Dict[str, str]:
        return {"gateway": self.advertise_name, "ip_addr": self.advertise_addr}

    def _encode_last_priority_version(self, params: Dict[str, str]) -> None:
        if not self._features.enabled(PRIORITY_CONFIG_FEATURE):
            return
        params["supportPriorityConfig"] = "1"
        versions = self.last_priority_version
        if versions is None:
            return
        for key, version in versions.items():
            params["lastPriorityVersions"] = f"{key}={version}"

    def load(self) -> bool:
        """Fetch and write the config; return ``False`` when it was not modified."""
        try:
            return self._load()
        except Exception:
            self._next_ctrl_service = True
            raise

    def _load(self) -> bool:
        params = self._base_params()
        params["last_version"] = self.last_version
        self._encode_last_priority_version(params)
        try:
            body = self._fetch(_RELEASE_PATH, params)
        except NotModified:
            log.info(
                "Skip loading config, %r-%r config is up to date: %r",
                self.advertise_name,
                self.advertise_addr,
                self.last_version,
            )
            return False

        response = _decode_object(body)
        yaml_bytes = _json_to_yaml(_string_field(response, "config"))
        tmp_path = f"{self.dst_path}.{uuid.uuid4()}.tmp"
        Path(tmp_path).write_bytes(yaml_bytes)
        os.replace(tmp_path, self.dst_path)
        self.last_version = _string_field(response, "version")

        try:
            self._write_priority_configs(response.get("priorityConfigs") or [])
        except (OSError, ValueError) as exc:
            log.warning(
                "Failed to write priority configs, %r-%r, %s",
                self.advertise_name,
                self.advertise_addr,
                exc,
            )
        return True

    def _write_priority_configs(self, items: List[Mapping[str, Any]]) -> None:
        if not self.dst_priority_config_dir:
            return
        directory = Path(self.dst_priority_config_dir)
        versions: Dict[str, str] = {}
        for item in items:
            key = _string_field(item, "key")
            yaml_bytes = _json_to_yaml(_string_field(item, "config"))
            tmp_path = directory / f"{key}.yaml.tmp"
            tmp_path.write_bytes(yaml_bytes)
            os.replace(tmp_path, directory / f"{key}.yaml")
            versions[key] = _string_field(item, "version")
        self._clean_up_priority_configs(versions)
        self.last_priority_version = versions

    def _clean_up_priority_configs(self, versions: Mapping[str, str]) -> None:
        try:
            with os.scandir(self.dst_priority_config_dir) as entries:
                stale = [
                    entry
                    for entry in entries
                    if not entry.is_dir(follow_symlinks=False)
                    and entry.name.endswith(".yaml")
                    and entry.name[: -len(".yaml")] not in versions
                ]
        except OSError as exc:
            log.warning(
                "Failed to read priority config dir, %r-%r, %s",
                self.advertise_name,
                self.advertise_addr,
                exc,
            )
            return
        for entry in stale:
            try:
                os.remove(entry.path)
            except OSError as exc:
                log.warning(
                    "Failed to remove expired priority config %s, %r-%r, %s",
                    entry.name,
                    self.advertise_name,
                    self.advertise_addr,
                    exc,
                )

    def load_features(self) -> Dict[str, bool]:
        """Fetch feature switches and apply them; return what the service sent."""
        body = self._fetch(_FEATURES_PATH, self._base_params())
        response = _decode_object(body)
        received = response.get("features") or {}
        if not isinstance(received, dict):
            raise ValueError("field 'features' must be an object")
        for name, enabled in received.items():
            self._features.set_enabled(name, bool(enabled))
        return {name: bool(enabled) for name, enabled in received.items()}

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        """Poll the control service until ``stop_event`` is set."""
        stop = stop_event if stop_event is not None else threading.Event()
        while not stop.is_set():
            try:
                self.load()
            except Exception as exc:
                log.warning(
                    "Failed to load config, %r-%r, %s", self.advertise_name, self.advertise_addr, exc
                )
                continue
            try:
                self.load_features()
            except Exception as exc:
                log.warning(
                    "Failed to load gateway features, %r-%r, %s",
                    self.advertise_name,
                    self.advertise_addr,
                    exc,
                )
            if stop.wait(self.poll_interval):
                return

    def debug_handler(self) -> Callable:
        """A WSGI application serving ``/debug/ctrl/inspect`` and ``/debug/ctrl/load``."""

        def respond(start_response, status: str, body: bytes, content_type: str):
            start_response(
                status, [("Content-Type", content_type), ("Content-Length", str(len(body)))]
            )
            return [body]

        def as_json(value: Any) -> bytes:
            return (json.dumps(value, separators=(",", ":")) + "\n").encode("utf-8")

        def application(environ, start_response):
            path = environ.get("PATH_INFO", "")
            if path == "/debug/ctrl/inspect":
                payload = {
                    "ctrl_service": list(self.ctrl_service),
                    "ctrl_service_idx": self._ctrl_service_idx,
                    "next_ctrl_service": self._next_ctrl_service,
                    "dst_path": self.dst_path,
                    "hostname": self.advertise_name,
                    "advertise_addr": self.advertise_addr,
                }
                return respond(start_response, "200 OK", as_json(payload), "application/json")
            if path == "/debug/ctrl/load":
                if environ.get("REQUEST_METHOD", "GET") != "POST":
                    return respond(start_response, "405 Method Not Allowed", b"", "text/plain")
                try:
                    self.load()
                except Exception as exc:
                    return respond(
                        start_response,
                        "500 Internal Server Error",
                        str(exc).encode("utf-8"),
                        "text/plain; charset=utf-8",
                    )
                return respond(start_response, "200 OK", as_json({}), "application/json")
            return respond(
                start_response, "404 Not Found", b"404 page not found\n", "text/plain; charset=utf-8"
            )

        return application