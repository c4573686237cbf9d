"""Structured logging configuration for tordirect.

Provides logging setup with correlation IDs, structured output,
and configurable log levels.
"""

from __future__ import annotations

import json
import logging
import logging.config
import sys
import time
import uuid
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Any, cast

from tordirect.utils.exceptions import TorDirectError
from tordirect.utils.rich_logging import FileFormatter, create_rich_handler

if TYPE_CHECKING:  # pragma: no cover
    from tordirect.models import ObservabilityConfig

correlation_id: ContextVar[str | None] = cast(
    "ContextVar[str | None]",
    ContextVar("correlation_id", default=None),
)

_RESERVED_RECORD_KEYS = frozenset(
    {
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
        "taskName",
        "correlation_id",
        "message",
        "asctime",
    }
)


class CorrelationFilter(logging.Filter):
    """Filter to add correlation ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add correlation ID to log record."""
        record.correlation_id = correlation_id.get() or "no-correlation-id"
        return True


class StructuredFormatter(logging.Formatter):
    """Structured JSON formatter for logs."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry: dict[str, Any] = {
            "timestamp": time.time(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if hasattr(record, "correlation_id"):
            log_entry["correlation_id"] = record.correlation_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        log_entry.update(
            {
                key: value
                for key, value in record.__dict__.items()
                if key not in _RESERVED_RECORD_KEYS
            }
        )

        return json.dumps(log_entry, default=str)


def setup_logging(config: ObservabilityConfig) -> None:
    """Set up logging from the observability section of the configuration.

    The console always gets a Rich handler. When ``log_file`` is set, a
    rotating file handler is added using either the JSON formatter or a
    plain formatter that strips Rich markup.
    """
    level = config.log_level.value

    logging_config: dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": StructuredFormatter,
            },
            "simple": {
                "()": FileFormatter,
                "format": "%(asctime)s %(levelname)s %(correlation_id)s %(name)s.%(funcName)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "filters": {
            "correlation": {
                "()": CorrelationFilter,
            },
        },
        "handlers": {},
        "loggers": {
            "tordirect": {
                "level": level,
                "handlers": [],
                "propagate": False,
            },
            "aiohttp.access": {
                "level": "WARNING",
            },
        },
        "root": {
            "level": level,
            "handlers": [],
        },
    }

    if config.structured_logging:
        logging_config["handlers"]["console"] = {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": "structured",
            "filters": ["correlation"],
            "stream": sys.stdout,
        }
        logging_config["loggers"]["tordirect"]["handlers"].append("console")
        logging_config["root"]["handlers"].append("console")

    if config.log_file:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logging_config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": level,
            "formatter": "structured" if config.structured_logging else "simple",
            "filters": ["correlation"],
            "filename": str(log_path),
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
        }
        logging_config["loggers"]["tordirect"]["handlers"].append("file")

    logging.config.dictConfig(logging_config)

    if not config.structured_logging:
        rich_handler = create_rich_handler(level=level)
        rich_handler.addFilter(CorrelationFilter())
        logging.getLogger().addHandler(rich_handler)
        logging.getLogger("tordirect").addHandler(rich_handler)

    if config.log_correlation_id:
        correlation_id.set(str(uuid.uuid4()))


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name.

    Module names already under the ``tordirect`` namespace are used as-is.
    """
    if name == "tordirect" or name.startswith("tordirect."):
        return logging.getLogger(name)
    return logging.getLogger(f"tordirect.{name}")


def set_correlation_id(corr_id: str | None = None) -> str:
    """Set correlation ID for the current context."""
    if corr_id is None:
        corr_id = str(uuid.uuid4())
    correlation_id.set(corr_id)
    return corr_id


def get_correlation_id() -> str | None:
    """Get the current correlation ID."""
    return correlation_id.get()


class LoggingContext:
    """Context manager that logs the start, end and duration of an operation.

    Operations in ``info_operations`` or slower than ``slow_threshold`` are
    reported at INFO, everything else at DEBUG. Failures are always logged
    at ERROR and never suppressed.
    """

    info_operations = frozenset(
        {
            "content_add",
            "content_remove",
            "log_replay",
            "daemon_start",
            "daemon_stop",
        }
    )

    def __init__(
        self,
        operation: str,
        log_level: int | None = None,
        slow_threshold: float = 1.0,
        **kwargs: Any,
    ):
        """Initialize operation context manager.

        Args:
            operation: Name of the operation
            log_level: Fixed logging level, overrides the automatic choice
            slow_threshold: Duration in seconds above which to log at INFO level
            **kwargs: Additional context to include in logs

        """
        self.operation = operation
        self.kwargs = kwargs
        self.logger = get_logger(__name__)
        self.start_time: float | None = None
        self.log_level = log_level
        self.slow_threshold = slow_threshold
        self._previous_correlation: str | None = None

    def __enter__(self):
        """Enter the context manager."""
        self.start_time = time.time()
        self._previous_correlation = correlation_id.get()
        set_correlation_id()

        level = self.log_level
        if level is None:
            level = (
                logging.INFO
                if self.operation in self.info_operations
                else logging.DEBUG
            )
        self.logger.log(level, "Starting %s", self.operation, extra=self.kwargs)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit the context manager."""
        duration = time.time() - self.start_time if self.start_time else 0.0

        if exc_type is None:
            level = self.log_level
            if level is None:
                if (
                    self.operation in self.info_operations
                    or duration >= self.slow_threshold
                ):
                    level = logging.INFO
                else:
                    level = logging.DEBUG
            self.logger.log(
                level,
                "Completed %s in %.3fs",
                self.operation,
                duration,
                extra=self.kwargs,
            )
        else:
            self.logger.error(
                "Failed %s in %.3fs: %s",
                self.operation,
                duration,
                exc_val,
                extra=self.kwargs,
            )

        correlation_id.set(self._previous_correlation)
        return False


def log_exception(logger: logging.Logger, exc: Exception, context: str = "") -> None:
    """Log an exception with context."""
    if isinstance(exc, TorDirectError):
        logger.error(
            "%s: %s",
            context,
            exc.message,
            extra={"details": exc.details},
            exc_info=exc,
        )
    else:
        logger.error("%s: %s", context, exc, exc_info=exc)
