"""Backend target and endpoint URL parsing."""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import SplitResult, parse_qs, urlsplit

__all__ = ["Target", "parse_target", "parse_endpoint", "is_secure"]

_TRUE_VALUES = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_VALUES = frozenset({"0", "f", "F", "FALSE", "false", "False"})


@dataclass(frozen=True)
class Target:
    """A resolver target such as ``discovery:///service``."""

    scheme: str
    authority: str = ""
    endpoint: str = ""


def _split(url: str) -> SplitResult:
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in url):
        raise ValueError(f"invalid control character in URL: {url!r}")
    parts = urlsplit(url)
    # Accessing the port validates it.
    parts.port
    return parts


def _host(parts: SplitResult) -> str:
    return parts.netloc.rpartition("@")[2]


def parse_target(endpoint: str) -> Target:
    """Parse a backend target; bare addresses use the ``direct`` scheme."""
    if "://" not in endpoint:
        endpoint = "direct:///" + endpoint
    parts = _split(endpoint)
    path = parts.path
    return Target(
        scheme=parts.scheme,
        authority=_host(parts),
        endpoint=path[1:] if len(path) > 1 else "",
    )


def parse_endpoint(endpoints, scheme: str, is_secure: bool) -> str:
    """Return the host of the first endpoint matching scheme and security, or ``""``."""
    wanted_secure = is_secure
    for endpoint in endpoints:
        parts = _split(endpoint)
        if parts.scheme == scheme and _is_secure(parts) == wanted_secure:
            return _host(parts)
    return ""


def _is_secure(parts: SplitResult) -> bool:
    values = parse_qs(parts.query, keep_blank_values=True).get("isSecure")
    if not values:
        return False
    value = values[0]
    if value in _TRUE_VALUES:
        return True
    return False if value in _FALSE_VALUES else False


def is_secure(url) -> bool:
    """Read the ``isSecure`` query flag of an endpoint URL."""
    parts = url if isinstance(url, SplitResult) else urlsplit(url)
    return _is_secure(parts)