"""Logging for the sonar package: one named logger, console plus optional file."""

import json
import logging
import sys
from datetime import datetime, timezone
from .config import settings

CONSOLE_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Keys callers may pass through ``extra=`` that JSON output keeps
CONTEXT_FIELDS = ("user_id", "ping_id", "command")


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                entry[field] = getattr(record, field)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _file_handler(path: str) -> logging.Handler | None:
    try:
        handler = logging.FileHandler(path)
    except OSError as e:
        print(f"sonar: cannot open log file {path}: {e}", file=sys.stderr)
        return None
    if settings.LOG_FORMAT == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, DATE_FORMAT))
    return handler


def setup_logger(name: str = "sonar") -> logging.Logger:
    """Configure the package logger once; later calls return it unchanged."""
    logger = logging.getLogger(name)
    logger.setLevel(settings.LOG_LEVEL)
    if logger.handlers:
        return logger

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT, DATE_FORMAT))
    logger.addHandler(console)

    if settings.LOG_FILE:
        handler = _file_handler(settings.LOG_FILE)
        if handler is not None:
            logger.addHandler(handler)

    return logger


logger = setup_logger()
