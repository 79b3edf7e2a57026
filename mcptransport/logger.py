"""A minimal logging interface and its default implementation."""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

DEFAULT_LOGGER_NAME = "mcptransport"


@runtime_checkable
class Logger(Protocol):
    """Anything that can log printf-style informational and error messages."""

    def info(self, fmt: str, *args: Any) -> None:
        """Log an informational message."""

    def error(self, fmt: str, *args: Any) -> None:
        """Log an error message."""


class StdLogger:
    """Logger backed by a standard :class:`logging.Logger`."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def info(self, fmt: str, *args: Any) -> None:
        self._logger.info("INFO: " + fmt, *args)

    def error(self, fmt: str, *args: Any) -> None:
        self._logger.error("ERROR: " + fmt, *args)


def default_logger() -> StdLogger:
    """Return a logger that writes through the package's standard logger."""
    return StdLogger(logging.getLogger(DEFAULT_LOGGER_NAME))