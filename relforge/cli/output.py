"""Shared console and logging setup for CLI commands."""

from __future__ import annotations

import logging

from rich.console import Console

from relforge.config import RelforgeSettings

console = Console()

_LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(settings: RelforgeSettings, *, verbose: bool = False) -> None:
    """Configure root logging unless the host process already has.

    ``--verbose`` (or ``RELFORGE_DEBUG``) forces DEBUG; otherwise the level
    comes from ``RELFORGE_LOG_LEVEL``.
    """
    if verbose or settings.debug:
        level = logging.DEBUG
    else:
        level = logging.getLevelName(settings.log_level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=_LOG_FORMAT)


def print_error(exc: BaseException) -> None:
    console.print(f"[bold red]{type(exc).__name__}:[/bold red] {exc}")
