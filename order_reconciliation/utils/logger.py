"""
Centralized logging configuration.
Provides structured logging for the reconciliation audit trail, cycle timing and debugging.
"""
import logging
import logging.config
import json
import sys
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

ROOT_LOGGER_NAME = "order_reconciliation"

class JSONFormatter(logging.Formatter):
    """
    Custom JSON formatter for structured logging.
    Converts log records to JSON format for easy parsing and analysis.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra_data = getattr(record, 'extra_data', None)
        if extra_data:
            # context never overwrites the core record fields
            for key, value in extra_data.items():
                log_entry[f"ctx_{key}" if key in log_entry else key] = value

        log_entry.update({
            "process_id": record.process,
            "thread_id": record.thread,
        })

        # datetimes / enums in context are rendered with str()
        return json.dumps(log_entry, ensure_ascii=False, default=str)

class ContextFormatter(logging.Formatter):
    """Console formatter that appends structured context as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extra_data = getattr(record, 'extra_data', None)
        if not extra_data:
            return base
        pairs = " ".join(f"{k}={v}" for k, v in extra_data.items())
        return f"{base} | {pairs}"

class StructuredLogger:
    """
    Wrapper around standard logger to provide structured logging methods.

    `bind()` returns a child wrapper that stamps the given context
    (e.g. execution_id) on every record.
    """

    def __init__(self, name: str, context: Optional[Dict[str, Any]] = None):
        self.logger = logging.getLogger(name)
        self.context: Dict[str, Any] = dict(context or {})

    def bind(self, **context) -> "StructuredLogger":
        merged = {**self.context, **context}
        return StructuredLogger(self.logger.name, merged)

    def _log_with_extra(self, level: int, message: str, /, **kwargs):
        """Log with extra structured data."""
        exc_info = kwargs.pop("exc_info", None)
        extra_data = {**self.context, **{k: v for k, v in kwargs.items() if v is not None}}
        self.logger.log(level, message, exc_info=exc_info, extra={'extra_data': extra_data})

    def info(self, message: str, /, **kwargs):
        """Log info level with structured data."""
        self._log_with_extra(logging.INFO, message, **kwargs)

    def warning(self, message: str, /, **kwargs):
        """Log warning level with structured data."""
        self._log_with_extra(logging.WARNING, message, **kwargs)

    def error(self, message: str, /, **kwargs):
        """Log error level with structured data."""
        self._log_with_extra(logging.ERROR, message, **kwargs)

    def debug(self, message: str, /, **kwargs):
        """Log debug level with structured data."""
        self._log_with_extra(logging.DEBUG, message, **kwargs)

def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """
    Setup application logging configuration.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for JSON log output
        enable_console: Whether to log to console
    """

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    config: Dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": JSONFormatter,
            },
            "standard": {
                "()": ContextFormatter,
                "fmt": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            }
        },
        "handlers": {},
        "loggers": {
            ROOT_LOGGER_NAME: {
                "level": log_level,
                "handlers": [],
                "propagate": False
            },
            "apscheduler": {
                "level": "INFO",
                "handlers": [],
                "propagate": False
            },
            "uvicorn": {
                "level": "INFO",
                "handlers": [],
                "propagate": False
            },
            "sqlalchemy.engine": {
                "level": "WARNING",  # Reduce SQL query noise
                "handlers": [],
                "propagate": False
            }
        },
        "root": {
            "level": log_level,
            "handlers": []
        }
    }

    named_loggers = [ROOT_LOGGER_NAME, "apscheduler", "uvicorn", "sqlalchemy.engine"]

    if enable_console:
        config["handlers"]["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "standard",
            "level": log_level
        }
        for name in named_loggers:
            config["loggers"][name]["handlers"].append("console")
        config["root"]["handlers"].append("console")

    if log_file:
        config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,  # 10MB
            "backupCount": 5,
            "formatter": "json",
            "level": log_level
        }
        for name in named_loggers:
            config["loggers"][name]["handlers"].append("file")
        config["root"]["handlers"].append("file")

    logging.config.dictConfig(config)

def get_logger(name: str) -> StructuredLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        StructuredLogger instance
    """
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return StructuredLogger(name)
    return StructuredLogger(f"{ROOT_LOGGER_NAME}.{name}")

# Audit logging for business events
def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    execution_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> None:
    """
    Log business events for audit trails.

    Args:
        event_type: Type of business event (e.g., 'order_paid', 'status_conflict')
        details: Event-specific details
        execution_id: Reconciliation cycle ID if applicable
        request_id: Request ID for tracing
    """
    audit_logger = get_logger("audit")
    audit_logger.info(
        f"Business event: {event_type}",
        event_type=event_type,
        execution_id=execution_id,
        request_id=request_id,
        details=details
    )

# Performance logging
def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None
) -> None:
    """
    Log performance metrics.

    Args:
        operation: Operation name
        duration_ms: Duration in milliseconds
        additional_data: Additional context data
    """
    perf_logger = get_logger("performance")
    data = {"duration_ms": duration_ms}
    if additional_data:
        data.update(additional_data)

    perf_logger.info(
        f"Performance: {operation}",
        operation=operation,
        metrics=data
    )
