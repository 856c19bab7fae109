from __future__ import annotations

import logging
import sys

LEVEL_DEBUG = "DEBUG"
LEVEL_INFO = "INFO"
LEVEL_WARN = "WARN"
LEVEL_ERROR = "ERROR"

_LEVELS = {
    LEVEL_DEBUG: logging.DEBUG,
    LEVEL_INFO: logging.INFO,
    LEVEL_WARN: logging.WARNING,
    LEVEL_ERROR: logging.ERROR,
}

logger = logging.getLogger("tracetap")


class ComponentFormatter(logging.Formatter):
    """[15:04:05.000] LEVEL [COMPONENT ] message"""

    def __init__(self):
        super().__init__(datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        level = record.levelname
        if level == "WARNING":
            level = "WARN"
        ts = f"{self.formatTime(record, self.datefmt)}.{int(record.msecs):03d}"
        component = getattr(record, "component", record.name)
        return f"[{ts}] {level:<5} [{component:<10}] {record.getMessage()}"


def configure_logging(level: str = "info") -> None:
    if any(getattr(h, "_tracetap", False) for h in logger.handlers):
        logger.setLevel(level.upper())
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ComponentFormatter())
    handler._tracetap = True
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False


def log(level: str, component: str, msg: str) -> None:
    logger.log(_LEVELS.get(level.upper(), logging.INFO), msg, extra={"component": component})
