"""Structured logging for the permission core.

Services log through the module-level ``logger`` and attach identifiers with
``extra=``; :class:`JSONFormatter` lifts the known identifiers into the JSON
body so one request or token can be followed across log lines.
"""
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from agent_otp.config import settings

LOGGER_NAME = "agent_otp"
TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record, carrying the record's correlation ids"""

    correlation_fields = (
        "user_id",
        "agent_id",
        "request_id",
        "token_id",
        "policy_id",
        "event_type",
        "action",
        "decision",
        "uses_remaining",
    )

    def format(self, record: logging.LogRecord) -> str:
        entry = self._base_entry(record)
        entry.update(self._correlation(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)

    @staticmethod
    def _base_entry(record: logging.LogRecord) -> Dict[str, Any]:
        # record.created is when the event happened, not when it was formatted
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return {
            "timestamp": created.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

    def _correlation(self, record: logging.LogRecord) -> Dict[str, Any]:
        return {
            name: getattr(record, name)
            for name in self.correlation_fields
            if hasattr(record, name)
        }


def _build_handler(log_format: str) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(TEXT_FORMAT) if log_format == "text" else JSONFormatter()
    handler.setFormatter(formatter)
    return handler


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> logging.Logger:
    """Configure the package logger; calling it again replaces the handler"""
    package_logger = logging.getLogger(LOGGER_NAME)
    package_logger.setLevel(log_level)
    package_logger.handlers = [_build_handler(log_format)]
    return package_logger


logger = setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
