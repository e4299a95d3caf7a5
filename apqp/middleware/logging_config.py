"""
Structured logging configuration.

Two output formats, chosen by ``LOG_FORMAT`` (or by environment when unset):

    json  — one object per line for log aggregation (production default)
    text  — colored single-line records for a terminal (development default)

Generation services tag their records with ``extra={"stage": ..., ...}``;
both formats surface those tags so a document's lifecycle can be followed
across the header insert, content resolution and batch insert.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Record attributes set through ``extra=`` that are worth emitting
CONTEXT_FIELDS = (
    "stage",
    "upstream_id",
    "document_id",
    "rows",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
    "request_id",
)

NOISY_LOGGERS = (
    "urllib3", "werkzeug", "sqlalchemy.engine", "httpx", "httpcore",
    "openai", "anthropic", "google_genai",
)


def record_context(record: logging.LogRecord) -> dict:
    """The ``CONTEXT_FIELDS`` present on a record, in declaration order."""
    return {
        key: getattr(record, key)
        for key in CONTEXT_FIELDS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "thread": record.threadName,
            **record_context(record),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored terminal output; generation context is appended as key=value."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        context = record_context(record)
        tail = ""
        if "stage" in context:
            tail = " " + " ".join(
                f"{k}={context[k]}" for k in ("stage", "upstream_id", "document_id", "rows")
                if k in context
            )
        line = f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}{tail}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _resolve(app) -> tuple[int, str]:
    testing = app.config.get("TESTING", False)
    production = not app.config.get("DEBUG", False) and not testing

    level_name = (app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL")
                  or ("INFO" if production else "DEBUG")).upper()
    fmt = (app.config.get("LOG_FORMAT") or ("json" if production else "text")).lower()
    return getattr(logging, level_name, logging.INFO), fmt


def configure_logging(app):
    """Install a single stderr handler on the root logger.

    Existing root handlers are replaced, so calling this for every app
    created in a process does not duplicate output.
    """
    level, fmt = _resolve(app)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if fmt == "json" else ReadableFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    app.logger.setLevel(level)
    if not app.config.get("TESTING", False):
        app.logger.info("Logging configured: level=%s format=%s",
                        logging.getLevelName(level), fmt)
