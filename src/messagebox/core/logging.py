"""
Logging utilities for the MessageBox.

Provides structured logging with correlation fields for tracing a message
through the transport (interface → message → subscriber → poll).
"""

import json
import logging
import sys
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


CORRELATION_FIELDS = [
    "interface_name",
    "message_id",
    "subscriber",
    "poll_id",
    "adapter_instance_id",
]


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs JSON-structured log lines.

    Each log line includes:
    - Standard log fields (timestamp, level, message, logger)
    - Correlation fields if present (interface_name, message_id, subscriber, ...)
    - Exception text if the record carries one
    """

    def __init__(self, include_timestamp: bool = True):
        super().__init__()
        self.include_timestamp = include_timestamp

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON."""
        log_entry = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if self.include_timestamp:
            log_entry["timestamp"] = datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat()

        for field in CORRELATION_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Formatter that outputs human-readable log lines with correlation context.

    Format: TIMESTAMP - LOGGER - LEVEL - MESSAGE [interface_name=X message_id=Y]
    """

    def __init__(self, include_timestamp: bool = True):
        if include_timestamp:
            fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        else:
            fmt = "%(name)s - %(levelname)s - %(message)s"
        super().__init__(fmt)

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)

        context_parts = []
        for field in CORRELATION_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                context_parts.append(f"{field}={value}")

        if context_parts:
            return f"{base} [{' '.join(context_parts)}]"
        return base


def configure_logging(
    level: int = logging.INFO,
    structured: bool = False,
    include_timestamp: bool = True,
    stream: Any = None,
) -> logging.Logger:
    """
    Configure the ``messagebox`` package logger.

    Args:
        level: Logging level (default: INFO)
        structured: If True, output JSON lines; if False, human-readable
        include_timestamp: Whether to include timestamps
        stream: Output stream (default: stdout)

    Returns:
        The configured package logger

    Example:
        >>> from messagebox.core.logging import configure_logging
        >>> configure_logging(level=logging.DEBUG, structured=True)
    """
    package_logger = logging.getLogger("messagebox")
    package_logger.setLevel(level)

    # Only add a handler once
    if not package_logger.handlers:
        handler = logging.StreamHandler(stream or sys.stdout)
        package_logger.addHandler(handler)

    formatter: logging.Formatter
    if structured:
        formatter = StructuredFormatter(include_timestamp=include_timestamp)
    else:
        formatter = HumanReadableFormatter(include_timestamp=include_timestamp)

    for handler in package_logger.handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)

    return package_logger


class CorrelationContext:
    """
    Context manager for adding correlation fields to log records.

    Contexts nest and are tracked per thread, so concurrent consumers each
    see their own fields.

    Example:
        >>> with CorrelationContext(interface_name="orders", poll_id="p-1"):
        ...     with CorrelationContext(message_id=msg.message_id):
        ...         log_with_context(logger, logging.INFO, "Consumed message")
    """

    _local = threading.local()

    def __init__(self, **fields: Any):
        self.context = {k: v for k, v in fields.items() if v is not None}

    @classmethod
    def _stack(cls) -> List["CorrelationContext"]:
        stack = getattr(cls._local, "stack", None)
        if stack is None:
            stack = []
            cls._local.stack = stack
        return stack

    def __enter__(self) -> "CorrelationContext":
        self._stack().append(self)
        return self

    def __exit__(self, *args) -> None:
        stack = self._stack()
        if stack and stack[-1] is self:
            stack.pop()

    @classmethod
    def get_current(cls) -> Dict[str, Any]:
        """Merged fields of every active context on this thread."""
        merged: Dict[str, Any] = {}
        for ctx in cls._stack():
            merged.update(ctx.context)
        return merged


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    exc_info: Optional[bool] = None,
    **extra: Any,
) -> None:
    """
    Log a message with correlation context.

    Merges the current CorrelationContext with any extra fields provided.

    Args:
        logger: The logger to use
        level: Log level (e.g., logging.INFO)
        message: Log message
        exc_info: Attach the active exception, as in ``logger.log``
        **extra: Additional fields to include
    """
    context = CorrelationContext.get_current()
    context.update({k: v for k, v in extra.items() if v is not None})
    logger.log(level, message, extra=context, exc_info=exc_info)
