"""
Logging setup for the workflow engine.

Every service logs with ``extra=ctx.log_extra(...)`` so a record carries the
workflow scope it touched (event, application, step, version, actor).  The
formatters render that scope; ``RequestIdFilter`` stamps the current
request id on records emitted while a request is active, so service lines
and the timing line of one request can be joined.

Settings (app config first, then environment):
    LOG_LEVEL    DEBUG | INFO | ...     default DEBUG in dev, INFO in prod
    LOG_FORMAT   json | readable        default json in prod, readable otherwise
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

SCOPE_FIELDS = ("event_id", "application_id", "step_id", "version_id", "actor_id")
REQUEST_FIELDS = ("request_id", "method", "path", "status", "duration_ms", "remote_addr")


def record_scope(record: logging.LogRecord) -> dict:
    """Workflow scope attached to *record*, without empty entries."""
    return {
        key: getattr(record, key)
        for key in SCOPE_FIELDS
        if getattr(record, key, None) is not None
    }


class RequestIdFilter(logging.Filter):
    """Copy ``g.request_id`` onto records that do not carry one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None and has_request_context():
            record.request_id = getattr(g, "request_id", None)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line; workflow scope nested under ``scope``."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        for key in REQUEST_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        scope = record_scope(record)
        if scope:
            entry["scope"] = scope
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Coloured single-line output for local development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:<8}"
        if self.use_color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        line = f"{ts} {level} {record.name}: {record.getMessage()}"
        scope = record_scope(record)
        if scope:
            line += " {" + " ".join(f"{k.removesuffix('_id')}={v}" for k, v in scope.items()) + "}"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" [{duration:.0f}ms]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _setting(app, name: str, default: str) -> str:
    return str(app.config.get(name) or os.getenv(name) or default)


def configure_logging(app):
    """Install a single stderr handler on the root logger for *app*."""
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = _setting(app, "LOG_LEVEL", "INFO" if is_prod else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = _setting(app, "LOG_FORMAT", "json" if is_prod else "readable").lower()

    handler = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(ReadableFormatter(use_color=sys.stderr.isatty()))
    handler.addFilter(RequestIdFilter())
    handler.setLevel(level)

    # Test sessions create several apps; keep exactly one handler
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine", "alembic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
    return handler
