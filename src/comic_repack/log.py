"""Logging setup for the command-line layer."""

import logging

from rich.console import Console
from rich.logging import RichHandler

# Shared console so log lines and progress bars do not tear each other
console = Console(stderr=True)

LEVELS = {0: logging.WARNING, 1: logging.INFO}


def init(verbose=0):
    """
    Route the `comic_repack` loggers through rich.

    Args:
        verbose (int): 0 = warnings, 1 = info, 2+ = debug
    """
    level = LEVELS.get(verbose, logging.DEBUG)
    handler = RichHandler(console=console, show_path=verbose > 1, markup=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    # Pillow is chatty at DEBUG (chunk-by-chunk PNG parsing)
    logging.getLogger("PIL").setLevel(logging.WARNING)
    return handler
