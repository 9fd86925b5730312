"""
Structured logging

Ledger modules log through ``log_action``, which attaches an action name,
the affected resource and optional key/value details to the record. The
handler installed by ``setup_logging`` renders them as one JSON object per
line, or as plain text for local runs.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

ROOT_LOGGER = "retail_ledger"

_STRUCTURED_FIELDS = ("action", "resource", "extra")


class JSONFormatter(logging.Formatter):

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
        }
        for field in _STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """``<time> <LEVEL> <logger> <message> action=... resource=...``"""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)s %(name)s %(message)s")

    def format(self, record):
        suffix = "".join(
            f" {field}={getattr(record, field)}"
            for field in ("action", "resource")
            if getattr(record, field, None)
        )
        return super().format(record) + suffix


def setup_logging(level: str = "INFO", log_format: str = "json",
                  log_file: Optional[str] = None,
                  logger_name: str = ROOT_LOGGER) -> logging.Logger:
    """
    Install a single handler on the application logger

    Calling it again replaces the previous handler. Records stop at this
    logger and are not passed on to the root logger.
    """
    logger = logging.getLogger(logger_name)
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(TextFormatter() if log_format == "text" else JSONFormatter())

    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               action: Optional[str] = None, resource: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Emit ``message`` at ``level`` ("info", "warning", ...) with structured fields

    ``resource`` names the affected entity, e.g. ``account:10000``; ``extra``
    carries further details such as amounts or error codes.
    """
    levelno = logging.getLevelName(level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(logger.name, levelno, __name__, 0, message, (), None)
    for field, value in zip(_STRUCTURED_FIELDS, (action, resource, extra)):
        if value:
            setattr(record, field, value)
    logger.handle(record)
