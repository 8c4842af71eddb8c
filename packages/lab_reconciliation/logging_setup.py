"""Logging for the reconciliation engine and its CLI.

Engine modules log through ``get_logger(__name__)`` and stay silent until an
entrypoint calls :func:`configure_logging`. The ``lab-recon`` CLI does so from
its root callback, so fetch failures, rejected saves and orphaned records end
up on stderr as one line each. ``LAB_RECON_LOG_LEVEL`` (a level name or
number) picks the verbosity when no level is passed.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO

PACKAGE_LOGGER = "lab_reconciliation"
LOG_LEVEL_ENV = "LAB_RECON_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_CONFIGURED = False


def resolve_level(level: int | str | None = None) -> int:
    """Level from ``level``, else ``LAB_RECON_LOG_LEVEL``, else ``INFO``.

    Unknown names fall back to ``INFO``.
    """

    if level is None:
        level = os.getenv(LOG_LEVEL_ENV) or logging.INFO
    if isinstance(level, int):
        return level
    name = level.strip().upper()
    if name.isdigit():
        return int(name)
    value = logging.getLevelNamesMapping().get(name)
    return value if value is not None else logging.INFO


def configure_logging(level: int | str | None = None, *, stream: IO[str] | None = None) -> None:
    """Send the package's log records to ``stream`` (stderr by default).

    Only the first call has an effect; later calls from the same process are
    ignored so repeated CLI invocations do not stack handlers.
    """

    global _CONFIGURED
    if _CONFIGURED:
        return

    logger = logging.getLogger(PACKAGE_LOGGER)
    for h in [h for h in logger.handlers if isinstance(h, logging.NullHandler)]:
        logger.removeHandler(h)

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(resolve_level(level))
    logger.propagate = False
    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    pkg = logging.getLogger(PACKAGE_LOGGER)
    if not _CONFIGURED and not pkg.handlers:
        pkg.addHandler(logging.NullHandler())
    return logging.getLogger(name)


__all__ = ["LOG_FORMAT", "LOG_LEVEL_ENV", "configure_logging", "get_logger", "resolve_level"]
