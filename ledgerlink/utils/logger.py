"""
Centralized logging configuration.
Structured (JSON-capable) logging shared by the API, the outbox dispatcher,
webhook ingestion and the reconciliation workers.
"""
import json
import logging
import logging.config
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

ROOT_LOGGER_NAME = "ledgerlink"
# Parameter names of StructuredLogger._log_with_extra; never usable as field names.
_RESERVED_FIELDS = frozenset({"message", "level", "exc_info"})


class JSONFormatter(logging.Formatter):
    """Render a log record as a single JSON line, merging structured fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
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

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            log_entry.update(extra_data)

        log_entry["thread_name"] = record.threadName
        return json.dumps(log_entry, ensure_ascii=False, default=str)


class StructuredLogger:
    """
    Thin wrapper that turns keyword arguments into structured log fields.

    ``exc_info`` is forwarded to the underlying logger instead of being
    serialised as a field, so tracebacks land in the ``exception`` key.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log_with_extra(self, level: int, message: str, exc_info: bool = False, **kwargs: Any) -> None:
        extra_data = {k: v for k, v in kwargs.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra={"extra_data": extra_data})

    def info(self, message: str, **kwargs: Any) -> None:
        self._log_with_extra(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log_with_extra(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log_with_extra(logging.ERROR, message, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log_with_extra(logging.DEBUG, message, **kwargs)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True,
) -> None:
    """
    Configure the ``ledgerlink`` logger tree plus uvicorn/sqlalchemy noise levels.

    Console output uses a human readable format; the optional rotating file
    handler writes JSON lines.
    """
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    managed = [ROOT_LOGGER_NAME, "uvicorn", "sqlalchemy.engine"]
    config: Dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "standard": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {},
        "loggers": {
            ROOT_LOGGER_NAME: {"level": log_level, "handlers": [], "propagate": False},
            "uvicorn": {"level": "INFO", "handlers": [], "propagate": False},
            "sqlalchemy.engine": {"level": "WARNING", "handlers": [], "propagate": False},
        },
        "root": {"level": log_level, "handlers": []},
    }

    handler_names = []
    if enable_console:
        config["handlers"]["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "standard",
            "level": log_level,
        }
        handler_names.append("console")

    if log_file:
        config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "formatter": "json",
            "level": log_level,
        }
        handler_names.append("file")

    for handler in handler_names:
        for name in managed:
            config["loggers"][name]["handlers"].append(handler)
        config["root"]["handlers"].append(handler)

    logging.config.dictConfig(config)


def get_logger(name: str) -> StructuredLogger:
    """Return a structured logger namespaced under ``ledgerlink``."""
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return StructuredLogger(name)
    return StructuredLogger(f"{ROOT_LOGGER_NAME}.{name}")


def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    request_id: Optional[str] = None,
) -> None:
    """
    Audit trail entry for state changes that matter outside the process
    (payment transitions, anchored records, reconciliation runs).
    """
    audit_logger = get_logger("audit")
    fields: Dict[str, Any] = {k: v for k, v in details.items() if k not in _RESERVED_FIELDS}
    fields["event_type"] = event_type
    fields["request_id"] = request_id
    audit_logger.info(f"Business event: {event_type}", **fields)


def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None,
) -> None:
    perf_logger = get_logger("performance")
    data: Dict[str, Any] = {k: v for k, v in (additional_data or {}).items() if k not in _RESERVED_FIELDS}
    data["duration_ms"] = round(duration_ms, 2)
    data["operation"] = operation
    perf_logger.info(f"Performance: {operation}", **data)
