"""Grouped command listing for help output."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List

__all__ = ["CommandGroup", "CommandInfo", "commands_help", "command_group"]


class CommandGroup(str, Enum):
    """Help sections, in display order."""

    BASIC = "Basic Commands"
    MESSAGE = "Message Commands"
    SERVICE = "Service Commands"
    CODE = "Code Commands"
    DATABASE = "Database Commands"


_GROUP_ORDER = [group.value for group in CommandGroup]


@dataclass
class CommandInfo:
    """What the help listing needs to know about a sub-command."""

    name: str
    short: str = ""
    annotations: Dict[str, str] = field(default_factory=dict)
    available: bool = True
    help_topic: bool = False


def command_group(command: CommandInfo) -> str:
    """Return the group a command belongs to, from its ``group`` annotation."""
    group = command.annotations.get("group")
    if group is None:
        return CommandGroup.BASIC.value
    return group.value if isinstance(group, CommandGroup) else group


def _render_group(name: str, commands: List[CommandInfo]) -> str:
    lines = [f"\n{name}:\n"]
    lines.extend(
        f"  {command.name:<15} {command.short}\n"
        for command in sorted(commands, key=lambda c: c.name)
    )
    return "".join(lines)


def commands_help(commands: Iterable[CommandInfo]) -> str:
    """Render available commands grouped by section, known sections first."""
    groups: Dict[str, List[CommandInfo]] = {}
    for command in commands:
        if not command.available or command.help_topic:
            continue
        groups.setdefault(command_group(command), []).append(command)

    parts = [_render_group(name, groups[name]) for name in _GROUP_ORDER if name in groups]
    parts.extend(
        _render_group(name, groups[name])
        for name in sorted(groups)
        if name not in _GROUP_ORDER
    )
    return "".join(parts)