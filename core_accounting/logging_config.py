"""
Structured Logging Configuration Module

JSON log lines for the accounting engine. Business modules attach the
operation name and the affected entry, item or invoice id through
``log_action`` so every line can be traced back to a ledger event.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional

# Attributes copied from the LogRecord into the JSON line when set
STRUCTURED_FIELDS = ("correlation_id", "action", "resource", "extra")

TEXT_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record):
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def setup_logging(level: str = "INFO", log_format: str = "json",
                  log_file: Optional[str] = None,
                  logger_name: str = "accounting") -> logging.Logger:
    """
    Configure the application logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: ``json`` or ``text``
        log_file: Append to this file instead of stderr
        logger_name: Name of the application logger

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)

    # Calling twice must not double every line
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    if log_file:
        handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "accounting") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               action: Optional[str] = None, resource: Optional[str] = None,
               correlation_id: Optional[str] = None, extra: Optional[dict] = None,
               exc_info: bool = False):
    """
    Emit a record carrying the structured fields.

    Args:
        logger: Target logger
        level: Level name (info, warning, error, ...)
        message: Human readable message
        action: Operation name (post_entry, apply_outbound, submit_invoice, ...)
        resource: Entry, item or invoice id
        correlation_id: Request or validation attempt id
        extra: Any further key/value detail
        exc_info: Attach the exception being handled
    """
    fields = {
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra,
    }
    logger.log(
        getattr(logging, level.upper()),
        message,
        extra={key: value for key, value in fields.items() if value},
        exc_info=exc_info
    )
