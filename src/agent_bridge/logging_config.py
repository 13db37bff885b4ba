"""Log output through rich."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(level: str = "INFO", quiet: bool = False) -> None:
    """Route the ``agent_bridge`` loggers to a rich handler on stderr."""
    threshold = logging.WARNING if quiet else logging.getLevelName(level.upper())
    if not isinstance(threshold, int):
        threshold = logging.INFO

    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))

    root = logging.getLogger("agent_bridge")
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(threshold)
    root.propagate = False
