"""Logging configuration for the classification service.

Modules log through ``logging.getLogger(__name__)``; this module only wires
the root logger once at application start-up.
"""

from __future__ import annotations

import json
import logging
import sys

_RESERVED = frozenset(
    logging.LogRecord(
        name="", level=0, pathname="", lineno=0, msg="", args=None,
        exc_info=None,
    ).__dict__
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON documents."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key not in _RESERVED:
                entry[key] = value
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", json_format: bool = False) -> None:
    """Install a single stdout handler on the root logger.

    Args:
        level: Logging level name (DEBUG/INFO/WARNING/ERROR).
        json_format: Use JSONFormatter instead of the plain text format.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers = []

    handler = logging.StreamHandler(sys.stdout)
    if json_format:
        handler.setFormatter(JSONFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            )
        )
    root.addHandler(handler)
