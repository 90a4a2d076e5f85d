"""Structured JSON logging for better observability.

Outputs logs in JSON format for easy parsing by log aggregation tools.
Every task outcome is logged with the fields queue, task_id, attempt,
outcome, duration_ms and tags.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from .pii_redactor import PIIRedactor

if TYPE_CHECKING:
    from alumni_worker.queue.models import Task


# Fields promoted to the top level of every record when present
STANDARD_FIELDS = [
    "task_id", "queue", "handler", "attempt", "max_attempts",
    "outcome", "duration_ms", "tags", "tenant_id", "trace_id",
    "error", "next_run_in", "processed", "errors",
]

_RESERVED = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'asctime', 'taskName',
}


class JSONFormatter(logging.Formatter):
    """Format log records as JSON with structured fields."""

    def __init__(self, redact_pii: bool = True):
        super().__init__()
        self.redact_pii = redact_pii

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON."""
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": self._redact(record.getMessage()),
        }

        for field in STANDARD_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_obj[field] = self._redact(value) if isinstance(value, str) else value

        if record.exc_info:
            log_obj["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": self._redact(str(record.exc_info[1])) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key in _RESERVED or key.startswith('_') or key in STANDARD_FIELDS:
                continue
            log_obj[key] = self._redact(value) if isinstance(value, (str, dict)) else value

        return json.dumps(log_obj, default=str, ensure_ascii=False)

    def _redact(self, text: Any) -> Any:
        """Redact PII from text (or a payload mapping) if enabled."""
        if not self.redact_pii:
            return text
        if isinstance(text, dict):
            return PIIRedactor.redact_mapping(text)
        if not isinstance(text, str):
            return text
        return PIIRedactor.redact_for_logging(text)


class StructuredLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds structured context to all log messages."""

    def __init__(self, logger: logging.Logger, extra: Optional[dict] = None):
        super().__init__(logger, extra or {})

    def process(self, msg, kwargs):
        """Add extra context to log record."""
        extra = kwargs.get('extra', {})
        for key, value in self.extra.items():
            extra.setdefault(key, value)
        kwargs['extra'] = extra
        return msg, kwargs

    def with_context(self, **context) -> 'StructuredLoggerAdapter':
        """Create a new adapter with additional context."""
        new_extra = {**self.extra, **context}
        return StructuredLoggerAdapter(self.logger, new_extra)


def setup_json_logging(level: str = "INFO", redact_pii: bool = True):
    """
    Configure root logger for JSON output.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        redact_pii: Whether to redact PII from logs
    """
    formatter = JSONFormatter(redact_pii=redact_pii)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # Set level for common noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def setup_text_logging(level: str = "INFO"):
    """Plain-text logging for local development."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def configure_logging(log_format: str, level: str = "INFO"):
    """Install the formatter selected by the ``log_format`` setting."""
    if log_format == "json":
        setup_json_logging(level=level, redact_pii=True)
    else:
        setup_text_logging(level=level)


def get_structured_logger(name: str, **context) -> StructuredLoggerAdapter:
    """
    Get a structured logger with optional context.

    Args:
        name: Logger name
        **context: Default context fields (task_id, queue, etc.)
    """
    logger = logging.getLogger(name)
    return StructuredLoggerAdapter(logger, context)


def task_logger(task: "Task", name: str = "alumni_worker.tasks") -> StructuredLoggerAdapter:
    """Create a logger pre-configured for a specific task."""
    return get_structured_logger(
        name,
        task_id=task.id,
        queue=task.queue_name,
        handler=task.handler_ref,
        attempt=task.attempt,
        max_attempts=task.max_attempts,
        tags=list(task.tags),
        tenant_id=task.tenant_id,
        trace_id=task.trace_id,
    )
