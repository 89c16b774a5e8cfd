"""JSON log lines for DrasBot.

Every pipeline run logs through a logger bound to its ``processing_id`` and
sender ``identity``. Those two fields are lifted to the top level of the JSON
object so one message can be followed across stages with a plain grep.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional, TextIO

ROOT_LOGGER = "drasbot"
TRACE_FIELDS = ("processing_id", "identity")
QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "uvicorn.access")


class JSONFormatter(logging.Formatter):
    """One JSON object per record; structured fields travel in ``record.context``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = dict(getattr(record, "context", None) or {})
        for name in TRACE_FIELDS:
            if name in context:
                entry[name] = context.pop(name)
        if context:
            entry["context"] = context

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", stream: Optional[TextIO] = None) -> None:
    """Send every record to ``stream`` (stdout by default) as JSON."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Stamps bound fields on every record.

    Per-call fields come from ``context=`` or ``extra={"context": ...}`` and win
    over bound ones on conflict.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = dict(kwargs.pop("extra", None) or {})
        context = {**self.extra, **(extra.pop("context", None) or {}), **(kwargs.pop("context", None) or {})}
        if context:
            extra["context"] = context
        if extra:
            kwargs["extra"] = extra
        return msg, kwargs


def bind_logger(logger: logging.Logger, **fields: Any) -> LoggerAdapter:
    return LoggerAdapter(logger, fields)
