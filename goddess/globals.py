"""Process-wide build and runtime flags."""

from __future__ import annotations

import socket
from dataclasses import dataclass, field, fields
from typing import Dict

__all__ = ["GlobalFlags", "get_global_flags", "set_global_flags"]

_SERIALIZED_FIELDS = ("name", "author", "email", "repo", "description", "version", "built")


def _hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return ""


@dataclass
class GlobalFlags:
    """Build metadata plus the persistent command-line options."""

    name: str = ""
    author: str = ""
    email: str = ""
    repo: str = ""
    description: str = ""
    version: str = ""
    built: str = ""
    hostname: str = field(default_factory=_hostname)
    namespace: str = "moon"
    log_format: str = "TEXT"
    log_level: str = "DEBUG"

    def to_dict(self) -> Dict[str, str]:
        """Return the fields that are shown in serialized version output."""
        return {key: getattr(self, key) for key in _SERIALIZED_FIELDS}


_global_flags = GlobalFlags()


def get_global_flags() -> GlobalFlags:
    """Return the shared flags instance."""
    return _global_flags


def set_global_flags(**kwargs: str) -> None:
    """Update fields of the shared flags instance."""
    known = {f.name for f in fields(GlobalFlags)}
    unknown = sorted(set(kwargs) - known)
    if unknown:
        raise TypeError(f"unknown global flag(s): {', '.join(unknown)}")
    for key, value in kwargs.items():
        setattr(_global_flags, key, value)