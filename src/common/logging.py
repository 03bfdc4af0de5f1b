"""Logging setup for the repair desk.

Every module logs through ``logging.getLogger(__name__)``, so a single
stdout handler on the ``src`` logger covers the whole package. The HTTP
and realtime clients underneath supabase-py log each request or socket
frame at INFO; they are held at WARNING unless debugging.
"""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

NOISY_LOGGERS = ("httpx", "httpcore", "hpack", "websockets", "realtime")


def setup_logging(
    level: int = logging.INFO,
    module_name: str = "src",
    library_level: int = logging.WARNING,
) -> logging.Logger:
    """Attach the stdout handler and set levels.

    Safe to call again: the handler is added once, later calls only
    change levels (the CLI's ``-v`` after a default setup).
    """
    logger = logging.getLogger(module_name)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(handler)
    for handler in logger.handlers:
        handler.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, library_level))

    return logger
