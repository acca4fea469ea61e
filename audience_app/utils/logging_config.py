# audience_app/utils/logging_config.py

"""
Logging setup for the Flask app and the ``audience_app`` package loggers.

Structured context travels in ``extra={...}``. Any extra attribute whose name
looks like a credential is dropped before a record reaches a handler.
"""

import json
import logging
import os
import re
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

PACKAGE_LOGGER_NAME = "audience_app"
_HANDLER_MARKER = "_audience_handler"

_SENSITIVE_NAME = re.compile(r"password|token|key|secret|credential", re.IGNORECASE)

_STANDARD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "asctime",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


def _extra_fields(record):
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


class SensitiveFieldFilter(logging.Filter):
    """Strip extra attributes named like passwords, tokens, keys or secrets."""

    def filter(self, record):
        for key in list(_extra_fields(record)):
            if _SENSITIVE_NAME.search(key):
                delattr(record, key)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, carrying every extra field."""

    def __init__(self, app_name=None):
        super().__init__()
        self.app_name = app_name

    def format(self, record):
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if self.app_name:
            payload["app"] = self.app_name
        payload.update(_extra_fields(record))
        if record.exc_info:
            payload["error_type"] = record.exc_info[0].__name__ if record.exc_info[0] else "Exception"
            payload["traceback"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    """Readable single-line format with ``key=value`` extras appended."""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)s [%(name)s] %(message)s")

    def format(self, record):
        line = super().format(record)
        extras = _extra_fields(record)
        if extras:
            line = f"{line} | " + " ".join(f"{key}={value}" for key, value in sorted(extras.items()))
        return line


def _build_formatter(app):
    if str(app.config.get("LOG_FORMAT", "json")).lower() == "json":
        return JSONFormatter(app.config.get("APP_NAME"))
    return TextFormatter()


def _build_handlers(app):
    handlers = []
    formatter = _build_formatter(app)
    sensitive_filter = SensitiveFieldFilter()

    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console = logging.StreamHandler()
        handlers.append(console)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "audience_pipeline.log"),
            maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10 * 1024 * 1024)),
            backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
            encoding="utf-8",
        )
        handlers.append(file_handler)

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(sensitive_filter)
        setattr(handler, _HANDLER_MARKER, True)
    return handlers


def _reset_handlers(logger):
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()


def setup_logging(app):
    """Attach configured handlers to ``app.logger`` and the package logger; safe to call twice."""
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    loggers = (app.logger, logging.getLogger(PACKAGE_LOGGER_NAME))

    for logger in loggers:
        _reset_handlers(logger)
        logger.setLevel(level)
        for handler in _build_handlers(app):
            logger.addHandler(handler)

    logging.getLogger(PACKAGE_LOGGER_NAME).propagate = True

    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery.worker.strategy").setLevel(logging.WARNING)

    app.logger.info(
        "Logging configured",
        extra={"event": "logging_configured", "log_level": logging.getLevelName(level)},
    )
