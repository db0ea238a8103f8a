"""
Logging setup for the Flask app and importer workers.

``LOG_FORMAT=json`` emits one JSON object per line including any ``extra``
fields passed to the logger (``importer_session_id`` and friends); ``text``
keeps a conventional single-line format.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from flask import Flask
from flask.logging import default_handler

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_FILE_NAME = "waypoint.log"

_RESERVED_LOG_RECORD_FIELDS = {
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
    "message",
    "asctime",
}


class JsonFormatter(logging.Formatter):
    def __init__(self, app_name: str | None = None):
        super().__init__()
        self.app_name = app_name

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.app_name:
            payload["app"] = self.app_name
        for key, value in record.__dict__.items():
            if key in _RESERVED_LOG_RECORD_FIELDS or key.startswith("_"):
                continue
            payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=True)


def _build_formatter(app: Flask) -> logging.Formatter:
    if str(app.config.get("LOG_FORMAT", "text")).lower() == "json":
        return JsonFormatter(app.config.get("APP_NAME"))
    return logging.Formatter(TEXT_FORMAT)


def _resolve_log_dir(app: Flask) -> Path:
    log_dir = Path(app.config.get("LOG_DIR") or "logs")
    if not log_dir.is_absolute():
        log_dir = Path(app.root_path) / log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def setup_logging(app: Flask) -> None:
    """
    Attach console and rotating-file handlers to ``app.logger``.

    Safe to call more than once; previously installed handlers are replaced.
    Flask's default stderr handler is always removed.
    """

    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = _build_formatter(app)

    app.logger.removeHandler(default_handler)
    for handler in list(app.logger.handlers):
        if getattr(handler, "_waypoint_handler", False):
            app.logger.removeHandler(handler)
            handler.close()

    handlers: list[logging.Handler] = []
    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        handlers.append(logging.StreamHandler(stream=sys.stdout))
    if app.config.get("ENABLE_FILE_LOGGING", False):
        handlers.append(
            RotatingFileHandler(
                _resolve_log_dir(app) / LOG_FILE_NAME,
                maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10 * 1024 * 1024)),
                backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
                encoding="utf-8",
            )
        )

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler._waypoint_handler = True  # type: ignore[attr-defined]
        app.logger.addHandler(handler)

    app.logger.setLevel(level)
    app.logger.debug(
        "Logging configured (level=%s, format=%s, handlers=%d)",
        level_name,
        app.config.get("LOG_FORMAT", "text"),
        len(handlers),
    )
