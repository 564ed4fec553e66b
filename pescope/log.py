from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(verbose: bool = False) -> logging.Logger:
    """Attach a stderr RichHandler to the package logger; -v lowers the level to DEBUG."""
    level = logging.DEBUG if verbose else logging.WARNING
    logger = logging.getLogger("pescope")
    logger.setLevel(level)
    logger.propagate = False
    # Prevent duplicate handlers when the CLI runs more than once in a process.
    logger.handlers.clear()
    handler = RichHandler(
        console=Console(stderr=True),
        level=level,
        show_path=False,
        show_time=False,
        rich_tracebacks=True,
        markup=False,
    )
    logger.addHandler(handler)
    return logger
