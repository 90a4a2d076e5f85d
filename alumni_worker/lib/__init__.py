"""Library utilities for the alumni worker."""

from .pii_redactor import PIIRedactor
from .json_logger import (
    JSONFormatter,
    StructuredLoggerAdapter,
    setup_json_logging,
    configure_logging,
    get_structured_logger,
    task_logger,
)

__all__ = [
    # PII
    "PIIRedactor",
    # JSON logging
    "JSONFormatter",
    "StructuredLoggerAdapter",
    "setup_json_logging",
    "configure_logging",
    "get_structured_logger",
    "task_logger",
]
