"""JSON logging configuration for deskrelay."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# Identifiers lifted out of the context so log search can filter on them directly.
CORRELATION_KEYS = ("conversation_id", "user_id", "thread_id", "run_id")

QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "redis")


class JSONFormatter(logging.Formatter):
    """Format log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            context = dict(context)
            for key in CORRELATION_KEYS:
                if key in context:
                    log_data[key] = context.pop(key)
            if context:
                log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Route all records through one stdout JSON handler."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"deskrelay.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Merges bound context with per-call `context=` into the record."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        if context or self.extra:
            kwargs["extra"] = {"context": {**self.extra, **(context or {})}}
        return msg, kwargs


def bind_logger(name: str, **context: Any) -> LoggerAdapter:
    """Logger carrying fixed context (user id, conversation id) on every line."""
    return LoggerAdapter(get_logger(name), context)
