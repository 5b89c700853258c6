"""Logging configuration for the buildfarm client."""

import logging
from enum import IntEnum
from typing import TextIO

from rich.console import Console
from rich.logging import RichHandler


class LogLevel(IntEnum):
    """Log level enumeration.

    ``NORMAL`` shows step progress, ``DEBUG`` additionally echoes every
    captured step log (``-vv``).
    """

    QUIET = logging.WARNING
    NORMAL = logging.INFO
    DEBUG = logging.DEBUG


def level_for(verbosity: int, quiet: bool) -> LogLevel:
    """Map CLI verbosity flags to a log level.

    quiet takes precedence over any number of -v flags.
    """
    if quiet:
        return LogLevel.QUIET
    if verbosity >= 2:
        return LogLevel.DEBUG
    return LogLevel.NORMAL


def configure_logging(
    verbosity: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    stream: TextIO | None = None,
) -> Console:
    """Configure logging based on CLI options.

    Args:
        verbosity: Number of -v flags (0=normal, 1=progress, 2+=full step logs)
        quiet: Suppress non-error output
        no_color: Disable colored output
        stream: Output stream for logs (standard error when omitted)

    Returns:
        Configured Rich console for output
    """
    level = level_for(verbosity, quiet)

    console = Console(
        file=stream,
        stderr=stream is None,
        force_terminal=not no_color,
        no_color=no_color,
    )

    handler = RichHandler(
        console=console,
        show_time=verbosity >= 1,
        show_path=verbosity >= 2,
    )

    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[handler],
        force=True,
    )

    return console
