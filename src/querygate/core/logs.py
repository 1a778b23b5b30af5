"""Process-wide logging setup; diagnostics always go to stderr."""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def level_for(verbosity: int) -> int:
    """
    Map a -v/--verbose count to a logging level.

    0 -> WARNING, 1 -> INFO, 2+ -> DEBUG.

    Returns
    -------
    int
        Logging level constant.
    """
    if verbosity <= 0:
        return logging.WARNING
    if verbosity == 1:
        return logging.INFO
    return logging.DEBUG


def configure_logging(level: int) -> None:
    """Route timestamped log records to stderr, leaving stdout to the protocol."""
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )
