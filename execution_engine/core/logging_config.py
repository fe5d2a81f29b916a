"""
Structured Logging Configuration

Provides JSON-formatted logging for production with:
- Cycle ID and execution ID tracking across concurrent tasks
- Structured fields (timestamp, level, message, context)
- Configurable log levels
- Console and file handlers
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# Context variables survive across awaits and are copied into each task
cycle_id_var: ContextVar[Optional[str]] = ContextVar("cycle_id", default=None)
execution_id_var: ContextVar[Optional[int]] = ContextVar("execution_id", default=None)

_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def _timestamp() -> datetime:
    return datetime.now(timezone.utc)


def current_context() -> Dict[str, Any]:
    """cycle_id / execution_id of the running task, omitting unset ones"""
    context: Dict[str, Any] = {}
    if cycle_id_var.get():
        context["cycle_id"] = cycle_id_var.get()
    if execution_id_var.get() is not None:
        context["execution_id"] = execution_id_var.get()
    return context


class JSONFormatter(logging.Formatter):
    """
    Formatter that outputs logs as JSON.

    Includes:
    - timestamp (ISO 8601)
    - level, logger name, message
    - cycle_id / execution_id (if set)
    - additional context fields passed via extra={...}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": _timestamp().isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **current_context(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = {
            key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_data["context"] = extra_fields

        return json.dumps(log_data, ensure_ascii=True, default=str)


class StandardFormatter(logging.Formatter):
    """
    Human-readable formatter for development.

    Format: [TIMESTAMP] LEVEL - logger - message (cycle=..., execution=...)
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = _timestamp().strftime("%Y-%m-%d %H:%M:%S")
        base = f"[{timestamp}] {record.levelname:8s} - {record.name} - {record.getMessage()}"

        labels = {"cycle_id": "cycle", "execution_id": "execution"}
        tags = [f"{labels[key]}={value}" for key, value in current_context().items()]
        if tags:
            base += f" ({', '.join(tags)})"

        if record.exc_info:
            base += "\n" + self.formatException(record.exc_info)

        return base


def setup_logging(
    level: str = "INFO",
    json_logs: bool = False,
    log_file: Optional[str] = None
) -> None:
    """
    Configure root logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: If True, use JSON formatter (production), else standard formatter (dev)
        log_file: Optional file path to write logs to

    Environment Variables:
        LOG_LEVEL: Override log level (default: INFO)
        JSON_LOGS: If "true", enable JSON logging (default: false)
        LOG_FILE: File path for log output
    """
    level = os.getenv("LOG_LEVEL", level).upper()
    json_logs = os.getenv("JSON_LOGS", "true" if json_logs else "false").lower() == "true"
    log_file = os.getenv("LOG_FILE", log_file)

    numeric_level = getattr(logging, level, logging.INFO)
    formatter = JSONFormatter() if json_logs else StandardFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    logging.getLogger(__name__).info(
        "Logging configured",
        extra={"level": level, "json_logs": json_logs, "log_file": log_file or "none"}
    )


def set_cycle_id(cycle_id: Optional[str]) -> None:
    """Tag all subsequent logs of the current context with a driver cycle id."""
    cycle_id_var.set(cycle_id)


def set_execution_id(execution_id: Optional[int]) -> None:
    """Tag all subsequent logs of the current task with an execution id."""
    execution_id_var.set(execution_id)


def get_cycle_id() -> Optional[str]:
    return cycle_id_var.get()
