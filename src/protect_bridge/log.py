"""Logging setup for the Protect bridge."""

from __future__ import annotations

import sys
from typing import TextIO

from loguru import logger  # type: ignore[import-untyped]


LOG_FORMAT = (
    '<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | '
    '<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>'
)


def configure_logging(
    level: str = 'INFO', debug: bool = False, sink: TextIO | None = None
) -> int:
    """Replace the loguru sinks with a single stream sink.

    Args:
        level: Minimum level to emit.
        debug: Force DEBUG level regardless of ``level``.
        sink: Stream to write to (default: stderr).

    Returns:
        The id of the new sink.
    """
    logger.remove()
    return logger.add(
        sink or sys.stderr,
        level='DEBUG' if debug else level.upper(),
        format=LOG_FORMAT,
        backtrace=debug,
        diagnose=debug,
    )
