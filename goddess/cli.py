"""Command-line entry point."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

import yaml

from goddess.commands import CommandGroup, CommandInfo, commands_help
from goddess.globals import GlobalFlags, get_global_flags, set_global_flags

__all__ = ["render_version", "build_parser", "main"]

NAME = "goddess"
VERSION = "latest"
BUILD_TIME = "now"

_ROOT_SHORT = "goddess service governance platform - goddess service"
_ROOT_LONG = (
    "goddess (\u5ae6\u5a25) is the service governance platform for the goddess platform, "
    "providing unified service governance capabilities.\n\n"
    'Use "goddess [command] --help" to view detailed information about a specific command.'
)

_VERSION_SHORT = "Display version information and build details for the Goddess service"
_VERSION_LONG = (
    "Display version information and build details for the Goddess service.\n\n"
    "Output formats: txt (default), json and yaml, selected with --format."
)

_TXT_TEMPLATE = (
    "Name:\t{name}\n"
    "Author:\t{author}\n"
    "Email:\t{email}\n"
    "Version:{version}\n"
    "Repo:\t{repo}\n"
    "Built:\t{built}\n"
    "Description:\t{description}\n"
)

_COMMANDS = [
    CommandInfo("version", _VERSION_SHORT, {"group": CommandGroup.BASIC.value}),
]

_LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "FATAL": logging.CRITICAL,
}


def render_version(flags: GlobalFlags, output_format: str = "txt") -> str:
    """Render version information as text, JSON or YAML."""
    data = flags.to_dict()
    if output_format == "json":
        return json.dumps(data, separators=(",", ":"), ensure_ascii=False) + "\n"
    if output_format == "yaml":
        return yaml.safe_dump(data, sort_keys=False, allow_unicode=True) + "\n"
    return _TXT_TEMPLATE.format(**data)


def _add_global_options(parser: argparse.ArgumentParser, inherited: bool) -> None:
    def default(value: str):
        return argparse.SUPPRESS if inherited else value

    parser.add_argument(
        "-n", "--namespace", default=default("moon"), help="The namespace of the service"
    )
    parser.add_argument("--log-format", default=default("TEXT"), help="The format of the log")
    parser.add_argument("--log-level", default=default("DEBUG"), help="The level of the log")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the root command and its sub-commands."""
    parser = argparse.ArgumentParser(
        prog=NAME,
        description=_ROOT_LONG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_global_options(parser, inherited=False)
    subparsers = parser.add_subparsers(dest="command", metavar="[command]")
    version = subparsers.add_parser(
        "version",
        help=_VERSION_SHORT,
        description=_VERSION_LONG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_global_options(version, inherited=True)
    version.add_argument(
        "-f",
        "--format",
        default="txt",
        help="The format of the version output, supported: txt, json, yaml",
    )
    return parser


def _root_help() -> str:
    return (
        f"{_ROOT_LONG}\n\n"
        "Usage:\n"
        f"  {NAME} [flags]\n"
        f"  {NAME} [command]\n"
        f"{commands_help(_COMMANDS)}\n"
        "Flags:\n"
        "  -h, --help                help for goddess\n"
        "      --log-format string   The format of the log (default \"TEXT\")\n"
        "      --log-level string    The level of the log (default \"DEBUG\")\n"
        "  -n, --namespace string    The namespace of the service (default \"moon\")\n\n"
        f'Use "{NAME} [command] --help" for more information about a command.\n'
    )


def _configure_logging(level_name: str) -> None:
    logger = logging.getLogger("goddess")
    logger.setLevel(_LOG_LEVELS.get(level_name.upper(), logging.INFO))
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("ts=%(asctime)s level=%(levelname)s msg=%(message)s")
        )
        logger.addHandler(handler)


def main(argv: Optional[List[str]] = None) -> int:
    """Run the command line; return the process exit status."""
    set_global_flags(name=NAME, version=VERSION, built=BUILD_TIME)
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        return 0 if exc.code in (0, None) else 1

    set_global_flags(
        namespace=args.namespace, log_format=args.log_format, log_level=args.log_level
    )
    _configure_logging(args.log_level)

    if args.command == "version":
        sys.stdout.write(render_version(get_global_flags(), args.format))
        return 0
    sys.stdout.write(_root_help())
    return 0