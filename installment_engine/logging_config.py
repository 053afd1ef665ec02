"""
Structured Logging Configuration Module

One JSON object per line for plan, payment and guarantor operations, with the
operation name and the affected resource as first-class fields.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional

# LogRecord attributes that log_action may populate
STRUCTURED_FIELDS = ("correlation_id", "action", "resource", "extra")

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """Render a record as a JSON line, omitting empty structured fields"""

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "message": record.getMessage(),
        }
        for field in STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "installments",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the application logger.

    Args:
        level: Level name such as DEBUG or WARNING
        logger_name: Logger to configure; child loggers inherit its handler
        log_format: ``json`` for structured lines, anything else for plain text
        log_file: Write to this file instead of stderr

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    logger.handlers.clear()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(PLAIN_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger


def get_logger(name: str = "installments") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               action: Optional[str] = None, resource: Optional[str] = None,
               correlation_id: Optional[str] = None, extra: Optional[dict] = None):
    """
    Emit one structured log line.

    ``action`` names the engine operation (``create_plan``, ``mark_paid``),
    ``resource`` the affected record (``plan:<id>``) and ``extra`` any
    operation details.
    """
    levelno = logging.getLevelName(level.upper())
    if not logger.isEnabledFor(levelno):
        return

    fields = {"action": action, "resource": resource,
              "correlation_id": correlation_id, "extra": extra}
    record = logger.makeRecord(logger.name, levelno, __name__, 0, message, (), None)
    for name, value in fields.items():
        if value:
            setattr(record, name, value)
    logger.handle(record)
