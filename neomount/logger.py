"""
Module containing utilities for logging, along with the package logger.

Everything logs through the single "neomount" logger. Its messages include the name of
the thread, since most of the work happens on the union service workers, the remote
poller and the migration pools rather than on the main thread.
"""

import logging
from typing import Any

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(threadName)s - %(message)s"


def _get_logger(name: str = "neomount") -> logging.Logger:
    logger = logging.getLogger(name)

    # Importing the module again (e.g. in a forked test server) mustn't double output
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    return logger


def configure(debug: bool = False) -> None:
    """Log everything with debug enabled, and only from INFO upwards otherwise."""
    log.setLevel(logging.DEBUG if debug else logging.INFO)


def summarize(obj: Any, max_length: int = 255) -> str:
    """Return a stringified representation of the object up to the given length."""
    text = str(obj)

    if len(text) <= max_length:
        return text

    return text[: max_length - 3] + "..."


def format_size(size: int) -> str:
    """Format a byte count with the largest fitting binary unit."""
    if abs(size) < 1024:
        return f"{size} B"

    value = size / 1024

    for unit in ["KiB", "MiB", "GiB"]:
        if abs(value) < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024

    return f"{value:.1f} TiB"


# Package logger
log = _get_logger()
