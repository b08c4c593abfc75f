"""Registry of service discovery factories."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

__all__ = [
    "DiscoveryConfig",
    "DiscoveryError",
    "DiscoveryRegistry",
    "register",
    "create",
]


@dataclass
class DiscoveryConfig:
    """Configuration selecting and parameterising a discovery backend."""

    name: str = ""
    required: bool = False
    options: Dict[str, Any] = field(default_factory=dict)


class DiscoveryError(Exception):
    """Raised when a discovery cannot be created."""


Factory = Callable[[DiscoveryConfig], Any]


class DiscoveryRegistry:
    """Maps discovery names to factories."""

    def __init__(self) -> None:
        self._factories: Dict[str, Factory] = {}

    def register(self, name: str, factory: Factory) -> None:
        self._factories[name] = factory

    def create(self, config: Optional[DiscoveryConfig]) -> Any:
        """Build the discovery named by ``config``; ``None`` yields ``None``."""
        if config is None:
            return None
        if config.required and not config.name:
            raise DiscoveryError("discovery is required")
        factory = self._factories.get(config.name)
        if factory is None:
            raise DiscoveryError(f"discovery {config.name} has not been registered")
        try:
            return factory(config)
        except Exception as exc:
            raise DiscoveryError(f"create discovery error: {exc}") from exc


_global_registry = DiscoveryRegistry()


def register(name: str, factory: Factory) -> None:
    """Register a discovery factory in the global registry."""
    _global_registry.register(name, factory)


def create(config: Optional[DiscoveryConfig]) -> Any:
    """Create a discovery from the global registry."""
    return _global_registry.create(config)