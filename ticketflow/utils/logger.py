"""Structured JSON Logging with Correlation ID Support"""
import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional
from contextvars import ContextVar

from ..config.settings import settings


# Context variable for correlation ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Record attributes copied into the JSON payload when passed via `extra`
EXTRA_FIELDS = [
    "ticket_id",
    "workflow_type_id",
    "transition_id",
    "status_id",
    "action_id",
    "action_type",
    "user_id",
    "actor_id",
    "history_id",
    "error_code",
    "details",
    "status_code",
    "duration_ms",
    "event",
    "event_data",
    "payload",
]

# Sink for log_event actions
EVENT_LOGGER_NAME = "ticketflow.events"


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = getattr(record, "correlation_id", None) or correlation_id_var.get()
        if correlation_id:
            log_obj["correlation_id"] = correlation_id

        for field in EXTRA_FIELDS:
            if hasattr(record, field):
                log_obj[field] = getattr(record, field)

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def _rotating_handler(path: str, level: Optional[int] = None) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5,
        encoding="utf-8"
    )
    if level is not None:
        handler.setLevel(level)
    handler.setFormatter(JsonFormatter())
    return handler


def setup_logging() -> None:
    """Setup logging configuration"""
    logs_path = settings.logs_path
    os.makedirs(logs_path, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    # Console handler (for development)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JsonFormatter())
    root_logger.addHandler(console_handler)

    root_logger.addHandler(_rotating_handler(os.path.join(logs_path, "app.log")))
    root_logger.addHandler(_rotating_handler(os.path.join(logs_path, "error.log"), logging.ERROR))

    # Workflow events emitted by log_event actions also go to their own file
    events_logger = logging.getLogger(EVENT_LOGGER_NAME)
    events_logger.handlers.clear()
    events_logger.addHandler(_rotating_handler(os.path.join(logs_path, "events.log")))

    # Reduce verbosity of third-party loggers
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("pymongo").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name"""
    return logging.getLogger(name)


def get_event_logger() -> logging.Logger:
    """Logger that receives log_event action output"""
    return logging.getLogger(EVENT_LOGGER_NAME)


def set_correlation_id(correlation_id: str) -> None:
    """Set correlation ID in context"""
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    """Get correlation ID from context"""
    return correlation_id_var.get()
