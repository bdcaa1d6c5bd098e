"""
Logging setup — one stream handler on the root logger.

Level comes from ``LOG_LEVEL`` (default INFO).  Chatty client libraries are
capped at WARNING so request logs stay readable.
"""

import logging
import os
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "stripe")

_configured = False


def setup_logging(level: str | None = None) -> None:
    """Configure root logging once per process."""
    global _configured
    if _configured:
        return

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True
