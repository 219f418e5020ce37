"""Loguru sink setup. Logs go to stderr; stdout is reserved for CLI output."""
from __future__ import annotations

import sys

from loguru import logger

from pubsub_cli.app.core import SERVICE_NAME

_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{extra[service_name]} | {extra[event]} {message} | {extra}"
)


def _stderr_sink(message: str) -> None:
    # Resolved per write so a replaced sys.stderr (e.g. under test capture) is honoured.
    sys.stderr.write(message)


def configure_logging(level: str = "INFO") -> None:
    logger.remove()
    logger.configure(extra={"service_name": SERVICE_NAME, "event": "-"})
    logger.add(_stderr_sink, level=level.upper(), format=_FORMAT, backtrace=False)
