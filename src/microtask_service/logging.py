"""
Structured JSON logging for the microtask market service.

Every line is one JSON object. Context passed through ``extra=`` (task ids,
amounts, account ids) is kept under the "extra" key so ledger movements
can be traced from the log alone.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any

VALID_LOG_LEVELS: frozenset[str] = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

# Attributes every LogRecord carries; anything else came in through extra=
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime"}

_namespace = {"service": "microtask-market"}


class JSONFormatter(logging.Formatter):
    """Render a log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=UTC)
        entry: dict[str, Any] = {
            "timestamp": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        context = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}
        if context:
            entry["extra"] = context
        return json.dumps(entry, default=str)


def setup_logging(level: str, service_name: str, log_directory: str) -> logging.Logger:
    """
    Configure the service logger.

    Writes JSON lines to stdout and to ``<log_directory>/<service_name>.log``,
    rotated at UTC midnight with the date appended to the rotated file.

    Raises:
        ValueError: If level is not a valid log level
    """
    level_name = level.upper()
    if level_name not in VALID_LOG_LEVELS:
        raise ValueError(f"Invalid log level: {level}. Must be one of {sorted(VALID_LOG_LEVELS)}")

    logger = logging.getLogger(service_name)
    logger.setLevel(level_name)
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)

    directory = Path(log_directory)
    directory.mkdir(parents=True, exist_ok=True)
    formatter = JSONFormatter()
    handlers: list[logging.Handler] = [
        logging.StreamHandler(sys.stdout),
        TimedRotatingFileHandler(directory / f"{service_name}.log", when="midnight", utc=True),
    ]
    for handler in handlers:
        handler.setLevel(level_name)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.propagate = False
    _namespace["service"] = service_name
    return logger


def get_logger(name: str) -> logging.Logger:
    """Module logger under the configured service namespace."""
    return logging.getLogger(f"{_namespace['service']}.{name}")
