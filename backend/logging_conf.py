"""
Logging configuration.

Process-wide logging goes through the stdlib ``logging`` module. Provider
failures are additionally written to an append-only diagnostic log file so
they survive independently of the console.
"""

import logging
import os
import threading
from typing import Optional

from . import config

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DIAGNOSTIC_LOGGER = "nat.diagnostics"

_setup_lock = threading.Lock()
_diag_path: Optional[str] = None


def setup_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=_FORMAT)


def diagnostic_logger(path: Optional[str] = None) -> logging.Logger:
    """Return the diagnostic logger, attaching its file handler on first use.

    Passing a different ``path`` swaps the file handler; tests use this to
    point the log at a temporary directory.
    """
    global _diag_path
    logger = logging.getLogger(DIAGNOSTIC_LOGGER)
    target = os.path.abspath(path or config.error_log_path())
    with _setup_lock:
        if _diag_path == target:
            return logger
        for handler in list(logger.handlers):
            if isinstance(handler, logging.FileHandler):
                logger.removeHandler(handler)
                handler.close()
        os.makedirs(os.path.dirname(target), exist_ok=True)
        handler = logging.FileHandler(target, mode="a", encoding="utf-8", delay=True)
        handler.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        _diag_path = target
    return logger
