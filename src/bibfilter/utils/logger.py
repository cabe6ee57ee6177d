"""Package logger and the diagnostics-level -> logging-level mapping."""
from __future__ import annotations
import logging
import sys

# Messages carry their own "[component]" tag, so the format stays bare
_FORMAT = "%(levelname)-7s %(message)s"

logger = logging.getLogger("bibfilter")

_LEVELS = {
    0: logging.WARNING,
    1: logging.INFO,
    2: logging.DEBUG,
}


def get_logger(name: str) -> logging.Logger:
    """Child logger of the package logger (pass __name__)."""
    if name.startswith("bibfilter"):
        return logging.getLogger(name)
    return logger.getChild(name)


def configure_logging(diagnostics_level: int = 1, stream=None) -> logging.Logger:
    """
    Attach a single stream handler to the package logger.

    diagnostics_level: 0=warnings and errors only, 1=run summaries, 2=per-hit detail
    """
    level = _LEVELS.get(int(diagnostics_level), logging.DEBUG)
    logger.setLevel(level)
    for h in logger.handlers:
        if getattr(h, "_bibfilter", False):
            # repeated calls (CLI commands, tests) retarget the existing handler
            h.setStream(stream or sys.stdout)
            return logger
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler._bibfilter = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    return logger
