"""
Structured logging configuration.

LOG_FORMAT selects the formatter ("json" for aggregators, "readable" for a
terminal); LOG_LEVEL the threshold.  Every record emitted while a request is
being served is stamped with the request id, the caller and the workspace
(owner/scope) it touches, so the answer log of a single workspace can be
followed across requests.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from flask import g, has_app_context

# Attributes copied from ``extra=`` (or the request context) into JSON output
EXTRA_FIELDS = (
    "request_id",
    "user_id",
    "owner_id",
    "scope_id",
    "question_id",
    "event_type",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
)


class RequestContextFilter(logging.Filter):
    """Stamp records with request_id / user_id / scope_id from ``flask.g``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not has_app_context():
            return True
        if getattr(record, "request_id", None) is None:
            record.request_id = g.get("request_id")
        if getattr(record, "user_id", None) is None:
            record.user_id = g.get("jwt_user_id")
        access = g.get("access")
        if access is not None:
            if getattr(record, "owner_id", None) is None:
                record.owner_id = access.owner_id
            if getattr(record, "scope_id", None) is None:
                record.scope_id = access.scope_id
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line output for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        tags = []
        if getattr(record, "request_id", None):
            tags.append(f"rid={record.request_id}")
        if getattr(record, "scope_id", None) is not None:
            tags.append(f"ws={record.scope_id}")
        if getattr(record, "question_id", None) is not None:
            tags.append(f"q={record.question_id}")
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            tags.append(f"{duration:.0f}ms")
        suffix = f" [{' '.join(tags)}]" if tags else ""
        line = f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}{suffix}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger."""
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    use_json = app.config.get("LOG_FORMAT", "readable") == "json"

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if use_json else ReadableFormatter())
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()  # re-created apps (tests) must not stack handlers
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)
    if not app.testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, "json" if use_json else "readable")
