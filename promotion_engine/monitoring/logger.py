"""
Structured logging system for the promotion engine.

Provides:
- JSON and human-readable log formats
- Contextual metadata and correlation IDs
- Log categories for different components
- Rotating file handlers
- TRACE level logging for per-event debugging
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any
from uuid import uuid4


# =============================================================================
# TRACE Level Logging (below DEBUG)
# =============================================================================

TRACE = 5
logging.addLevelName(TRACE, "TRACE")


class LogCategory(str, Enum):
    """Log categories for different components."""

    SYSTEM = "SYSTEM"
    METRICS = "METRICS"
    PROMOTION = "PROMOTION"
    ROLLBACK = "ROLLBACK"
    ALERT = "ALERT"
    SCHEDULER = "SCHEDULER"


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    TEXT = "text"


_CONTEXT_FIELDS = ("correlation_id", "experiment", "variant", "run_id")


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def __init__(self, category: LogCategory = LogCategory.SYSTEM) -> None:
        """Initialize the formatter.

        Args:
            category: Default log category.
        """
        super().__init__()
        self.category = category

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON.

        Args:
            record: Log record to format.

        Returns:
            JSON formatted string.
        """
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "category": getattr(record, "category", self.category.value),
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field_name in _CONTEXT_FIELDS:
            value = getattr(record, field_name, None)
            if value:
                log_data[field_name] = value
        if hasattr(record, "extra_data") and record.extra_data:
            log_data["extra_data"] = record.extra_data

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable text formatter for development."""

    def __init__(self, category: LogCategory = LogCategory.SYSTEM) -> None:
        super().__init__()
        self.category = category

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as human-readable text."""
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        category = getattr(record, "category", self.category.value)

        parts = [
            timestamp,
            f"[{record.levelname:8s}]",
            f"[{category:9s}]",
        ]

        if getattr(record, "correlation_id", None):
            parts.append(f"[{record.correlation_id[:8]}]")
        if getattr(record, "experiment", None):
            parts.append(f"[{record.experiment}]")

        parts.append(record.getMessage())

        if hasattr(record, "extra_data") and record.extra_data:
            parts.append(f"| {record.extra_data}")

        message = " ".join(parts)

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return message


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter with context support."""

    def __init__(
        self,
        logger: logging.Logger,
        category: LogCategory = LogCategory.SYSTEM,
        correlation_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the context logger.

        Args:
            logger: Base logger instance.
            category: Log category.
            correlation_id: Optional correlation ID for tracing a run.
            context: Fixed context fields (experiment, variant, run_id).
        """
        super().__init__(logger, {})
        self.category = category
        self.correlation_id = correlation_id or str(uuid4())
        self.context = dict(context or {})

    def process(
        self,
        msg: str,
        kwargs: dict[str, Any],
    ) -> tuple[str, dict[str, Any]]:
        """Attach category, correlation id and fixed context to the record."""
        extra = kwargs.get("extra", {})
        extra["category"] = self.category.value
        extra["correlation_id"] = self.correlation_id
        for key, value in self.context.items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs

    def trace(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log at TRACE level, for per-variant and per-check detail too noisy for DEBUG."""
        self.log(TRACE, msg, *args, **kwargs)

    def with_context(
        self,
        experiment: str | None = None,
        variant: str | None = None,
        run_id: str | None = None,
    ) -> "ContextLogger":
        """Create a new logger bound to an experiment, variant or run.

        Args:
            experiment: Experiment name.
            variant: Variant name.
            run_id: Scheduler run identifier.

        Returns:
            New ContextLogger sharing this logger's correlation id.
        """
        context = dict(self.context)
        if experiment:
            context["experiment"] = experiment
        if variant:
            context["variant"] = variant
        if run_id:
            context["run_id"] = run_id
        return ContextLogger(self.logger, self.category, self.correlation_id, context)


def setup_logging(
    level: str = "INFO",
    log_format: LogFormat = LogFormat.JSON,
    log_file: Path | None = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 30,
) -> None:
    """Set up logging for the application.

    Args:
        level: Log level (TRACE, DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: Log format (json or text).
        log_file: Optional log file path.
        max_bytes: Rotation size for the file handler.
        backup_count: Number of rotated files kept.
    """
    root_logger = logging.getLogger()
    level_value = TRACE if level.upper() == "TRACE" else getattr(logging, level.upper())
    root_logger.setLevel(level_value)

    root_logger.handlers.clear()

    if LogFormat(log_format) == LogFormat.JSON:
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = TextFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=max_bytes,
                backupCount=backup_count,
            )
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            root_logger.warning(f"Failed to set up file logging: {e}")


@lru_cache(maxsize=32)
def get_logger(
    name: str,
    category: LogCategory = LogCategory.SYSTEM,
    correlation_id: str | None = None,
) -> ContextLogger:
    """Get a context logger for a component.

    Args:
        name: Logger name.
        category: Log category.
        correlation_id: Optional correlation ID.

    Returns:
        ContextLogger instance.
    """
    base_logger = logging.getLogger(name)
    return ContextLogger(base_logger, category, correlation_id)


# Convenience functions for quick logging
def log_promotion(message: str, experiment: str, level: str = "INFO", **kwargs: Any) -> None:
    """Log a promotion message."""
    logger = get_logger("promotion", LogCategory.PROMOTION)
    getattr(logger, level.lower())(message, extra={"experiment": experiment, "extra_data": kwargs})


def log_rollback(message: str, experiment: str, level: str = "WARNING", **kwargs: Any) -> None:
    """Log a rollback message."""
    logger = get_logger("rollback", LogCategory.ROLLBACK)
    getattr(logger, level.lower())(message, extra={"experiment": experiment, "extra_data": kwargs})


def log_alert(message: str, level: str = "WARNING", **kwargs: Any) -> None:
    """Log an alert message."""
    logger = get_logger("alert", LogCategory.ALERT)
    getattr(logger, level.lower())(message, extra={"extra_data": kwargs})
