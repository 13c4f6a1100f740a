"""Logging configuration for applications that embed the completion gateway.

Gateway and adapter records about a specific backend carry ``provider`` and
``model`` attributes (passed via ``extra=``); both formatters surface them.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import TextIO

from llm_failover.core.config import Settings, settings as default_settings

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

CONTEXT_FIELDS = ("provider", "model")
NOISY_LOGGERS = ("httpx", "httpcore")


def _context(record: logging.LogRecord) -> dict[str, str]:
    return {name: getattr(record, name) for name in CONTEXT_FIELDS if getattr(record, name, None)}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context(record),
        }
        if record.exc_info and record.exc_info[1]:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


class ContextTextFormatter(logging.Formatter):
    """Pipe-separated lines; a ``provider/model`` column is added when known."""

    def __init__(self):
        super().__init__(TEXT_FORMAT, datefmt=DATE_FORMAT)

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        context = _context(record)
        if not context:
            return line
        tag = "/".join(context[name] for name in CONTEXT_FIELDS if name in context)
        return f"{line} | {tag}"


def setup_logging(settings: Settings | None = None, stream: TextIO | None = None) -> logging.Handler:
    """Install a single root handler configured from settings and return it."""
    settings = settings or default_settings
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if settings.log_json else ContextTextFormatter())
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return handler
