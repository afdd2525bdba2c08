"""Structured JSON logging configuration."""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any, TextIO

from shared.config import get_settings

# Fields copied from `extra={...}` into the JSON payload when present
EXTRA_FIELDS = (
    "trace_id",
    "conversation_id",
    "appointment_id",
    "resource_id",
    "tool_name",
    "circuit_breaker",
)

# Client libraries that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "openai")


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

    Keys: timestamp (ISO 8601, UTC), level, logger, message, any of
    EXTRA_FIELDS passed through `extra`, and exception when exc_info is set.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field_name in EXTRA_FIELDS:
            value = getattr(record, field_name, None)
            if value is not None:
                log_data[field_name] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # UUIDs and datetimes in extras
        return json.dumps(log_data, default=str)


def configure_logging(level: str | None = None, stream: TextIO | None = None) -> None:
    """
    Route all logging through one JSON handler on the root logger.

    Args:
        level: Overrides settings.LOG_LEVEL (unknown names fall back to INFO)
        stream: Output stream, stderr by default
    """
    level_name = (level or get_settings().LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(log_level)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    root_logger.info(f"Logging configured | level={logging.getLevelName(log_level)} | format=json")
