"""
Structured logging for the navigation core
JSON records carry the navigation session and route they belong to
"""
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

from .config import NavigationConfig, get_settings

PACKAGE_LOGGER = "parking_navigation"

# Navigation context passed via `extra`, omitted from output when unset
CONTEXT_FIELDS = ("session_id", "route_id", "options", "changes")

NOISY_LOGGERS = ("httpx", "httpcore", "redis")


class NavigationJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter carrying navigation session context"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['logger'] = record.name

        if record.exc_info:
            log_record['exception'] = self.formatException(record.exc_info)

        # Extras are already merged by the base class; drop empty context
        for field in CONTEXT_FIELDS:
            if log_record.get(field) is None:
                log_record.pop(field, None)


def log_context(session_id: Optional[str] = None, route_id: Optional[str] = None) -> Dict[str, Any]:
    """`extra` mapping tying a record to a navigation session"""
    return {"session_id": session_id, "route_id": route_id}


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    config: Optional[NavigationConfig] = None
) -> logging.Logger:
    """
    Send the package's logs to stdout.

    Level and format default to the configured `log_level` / `log_format`.
    Only the package logger is touched so host applications keep their own
    root configuration.
    """
    config = config or get_settings()
    log_level = (log_level or config.log_level).upper()
    log_format = log_format or config.log_format

    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if log_format == "json":
        handler.setFormatter(NavigationJsonFormatter('%(timestamp)s %(level)s %(name)s %(message)s'))
    else:
        handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))

    logger.setLevel(getattr(logging, log_level))
    logger.addHandler(handler)
    logger.propagate = False

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
