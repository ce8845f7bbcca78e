"""Logging setup for the command-line tool."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(level_name: str = "warning") -> None:
    """Send log records to stderr through rich.

    Stdout is left to command output so ``--json-output`` stays parseable.

    Args:
        level_name: Log level string (debug/info/warning/error).
    """
    level = getattr(logging, level_name.upper(), logging.WARNING)

    handler = RichHandler(
        console=Console(stderr=True),
        show_path=level <= logging.DEBUG,
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter("%(name)s  %(message)s"))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # Keep transport chatter out unless explicitly asked for
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
