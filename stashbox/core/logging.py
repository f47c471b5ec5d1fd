"""
Structured logging configuration with JSON formatter.

This module provides:
- JSONFormatter for structured JSON logging
- ContextualLogger carrying per-request fields (tenant, batch)
- configure_logging() choosing JSON or plain text from LOG_FORMAT
"""
import logging
import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional


_STANDARD_RECORD_FIELDS = frozenset({
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'thread', 'threadName', 'exc_info', 'exc_text', 'stack_info',
    'getMessage', 'message', 'taskName',
})

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Example output:
    {
        "timestamp": "2025-01-19T10:30:45.123456+00:00",
        "level": "INFO",
        "logger": "stashbox.services.uploads",
        "message": "Upload batch finished: 2 stored, 0 failed",
        "tenant_id": "0b6f..."
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
            "process_id": record.process,
            "thread_name": record.threadName,
        }

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        if record.stack_info:
            log_entry["stack_info"] = record.stack_info

        # Fields passed through extra={...}
        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_FIELDS:
                log_entry[key] = self._serialize_value(value)

        return json.dumps(log_entry, default=str, ensure_ascii=False)

    def _serialize_value(self, value: Any) -> Any:
        """Make common non-JSON types serializable."""
        if isinstance(value, datetime):
            return value.isoformat()

        if isinstance(value, bytes):
            try:
                return value.decode('utf-8')
            except UnicodeDecodeError:
                return f"<binary data: {len(value)} bytes>"

        if isinstance(value, Exception):
            return {"type": type(value).__name__, "message": str(value)}

        if hasattr(value, '__dict__'):
            return str(value)

        return value


class ContextualLogger(logging.LoggerAdapter):
    """
    Logger adapter that attaches the same fields to every record.

    Usage:
        log = get_logger(__name__, with_context=True)
        log.set_context(tenant_id="t-1", files=3)
        log.info("Upload batch accepted")  # record carries tenant_id and files
    """

    def __init__(self, logger: logging.Logger, **context: Any):
        super().__init__(logger, dict(context))

    def set_context(self, **kwargs: Any) -> None:
        self.extra.update(kwargs)

    def clear_context(self) -> None:
        self.extra.clear()

    def process(self, msg, kwargs):
        # Explicit extra={...} wins over the bound context
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def _stdout_handler(formatter: logging.Formatter) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    return handler


def setup_json_logging(level: str = "INFO", logger_name: Optional[str] = None) -> logging.Logger:
    """
    Send one logger's records to stdout as JSON lines.

    A named logger stops propagating so its records are not printed twice.
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(level.upper())
    logger.handlers[:] = [_stdout_handler(JSONFormatter())]
    if logger_name is not None:
        logger.propagate = False
    return logger


def configure_logging(level: str = "INFO", log_format: str = "text") -> logging.Logger:
    """
    Configure the root logger from LOG_LEVEL / LOG_FORMAT.

    Args:
        level: Log level name
        log_format: 'json' for structured output, anything else for plain lines

    Returns:
        The root logger
    """
    if log_format.lower() == "json":
        return setup_json_logging(level)

    logging.basicConfig(
        level=level.upper(),
        handlers=[_stdout_handler(logging.Formatter(TEXT_FORMAT))],
        force=True,
    )
    # urllib3 logs every backend request
    logging.getLogger("urllib3").setLevel(max(logging.WARNING, logging.getLogger().level))
    return logging.getLogger()


def get_logger(name: str, with_context: bool = False):
    """Plain module logger, or a ContextualLogger wrapping it."""
    logger = logging.getLogger(name)
    return ContextualLogger(logger) if with_context else logger
