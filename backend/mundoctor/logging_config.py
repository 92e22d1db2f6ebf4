"""
Mundoctor Logging Setup
Root log format plus the JSON alert channel used for high-risk audit events
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from .config import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
ALERT_LOGGER_NAME = "mundoctor.audit.alerts"

_RESERVED_RECORD_FIELDS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "message",
    "asctime",
    "taskName",
}


class AuditAlertFormatter(logging.Formatter):
    """JSON formatter for the audit alert channel"""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_FIELDS or key.startswith("_"):
                continue
            log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def configure_logging(settings: Settings, stream: Optional[object] = None) -> None:
    """Configure root logging and attach the JSON handler to the alert logger."""
    logging.basicConfig(level=getattr(logging, settings.log_level), format=LOG_FORMAT)

    alert_logger = logging.getLogger(ALERT_LOGGER_NAME)
    if not any(isinstance(h.formatter, AuditAlertFormatter) for h in alert_logger.handlers):
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(AuditAlertFormatter())
        alert_logger.addHandler(handler)
    alert_logger.setLevel(logging.WARNING)
    alert_logger.propagate = False
