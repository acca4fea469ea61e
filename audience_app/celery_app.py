"""
Celery configuration for the audience pipeline worker.

Defaults to a SQLite transport in the Flask instance folder so local runs do
not need Redis. The daily pipeline is scheduled through Celery beat.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from celery.schedules import crontab
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "audience"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"
DAILY_TASK_NAME = "pipeline.run_daily"


def _configure_quiet_loggers(app: Flask) -> None:
    """Keep SQL statements and worker state chatter out of task logs."""
    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery.worker.strategy").setLevel(logging.WARNING)


def _normalize_sqlite_path(app: Flask) -> Path:
    configured = app.config.get("CELERY_SQLITE_PATH")
    if configured:
        sqlite_path = Path(configured)
        if not sqlite_path.is_absolute():
            sqlite_path = Path(app.instance_path) / sqlite_path
    else:
        sqlite_path = Path(app.instance_path) / DEFAULT_SQLITE_FILENAME

    sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite_path


def _determine_connection_urls(app: Flask) -> tuple[str, str]:
    """
    Resolve broker/result backend URLs, defaulting to SQLite transports.

    Returns:
        tuple[str, str]: (broker_url, result_backend)
    """
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")

    if broker_url and result_backend:
        return broker_url, result_backend

    # Celery expects forward slashes even on Windows.
    normalized = _normalize_sqlite_path(app).as_posix()
    return broker_url or f"sqla+sqlite:///{normalized}", result_backend or f"db+sqlite:///{normalized}"


def _load_extra_conf(app: Flask) -> Mapping[str, Any] | None:
    extra_conf: Mapping[str, Any] | str | None = app.config.get("CELERY_CONFIG")
    if isinstance(extra_conf, str):
        try:
            extra_conf = json.loads(extra_conf)
        except json.JSONDecodeError:
            app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.", exc_info=True)
            return None
    return extra_conf or None


def build_beat_schedule(app: Flask) -> dict[str, dict[str, Any]]:
    if not app.config.get("PIPELINE_BEAT_ENABLED", True):
        return {}
    hour = int(app.config.get("PIPELINE_DAILY_HOUR_UTC", 6))
    return {
        "audience-daily-run": {
            "task": DAILY_TASK_NAME,
            "schedule": crontab(minute=0, hour=hour),
            "options": {"queue": DEFAULT_QUEUE_NAME},
        }
    }


def create_celery_app(app: Flask) -> Celery:
    """
    Create and configure a Celery instance bound to the given Flask app.

    Switch to Redis/Postgres by setting ``CELERY_BROKER_URL`` and
    ``CELERY_RESULT_BACKEND``.
    """
    broker_url, result_backend = _determine_connection_urls(app)
    celery_app = Celery(
        app.import_name,
        broker=broker_url,
        backend=result_backend,
        include=("audience_app.tasks",),
    )

    time_limit = int(app.config.get("PIPELINE_TASK_TIME_LIMIT", 60 * 60))
    celery_app.conf.update(
        task_default_queue=DEFAULT_QUEUE_NAME,
        task_queues=[Queue(DEFAULT_QUEUE_NAME)],
        task_default_exchange=DEFAULT_QUEUE_NAME,
        task_default_routing_key=DEFAULT_QUEUE_NAME,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        task_track_started=True,
        result_extended=True,
        broker_connection_retry_on_startup=True,
        task_time_limit=time_limit,
        task_soft_time_limit=max(1, int(time_limit * 0.9)),
        timezone="UTC",
        enable_utc=True,
        beat_schedule=build_beat_schedule(app),
        worker_log_format="[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
        worker_task_log_format="[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s",
        worker_hijack_root_logger=False,
    )

    extra_conf = _load_extra_conf(app)
    app.logger.info(
        "Pipeline Celery configuration resolved",
        extra={
            "celery_extra_conf": extra_conf,
            "celery_broker_url": broker_url,
            "celery_result_backend": result_backend,
        },
    )
    if extra_conf:
        celery_app.conf.update(extra_conf)

    _configure_quiet_loggers(app)

    class FlaskContextTask(celery_app.Task):  # type: ignore[misc]
        """Run Celery tasks inside a Flask application context."""

        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    """Return (and cache) the Celery instance inside the extension state."""
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None:
        celery_app = create_celery_app(app)
        state["celery_app"] = celery_app
    return celery_app


def get_celery_app(app: Flask) -> Celery | None:
    state: dict[str, Any] | None = app.extensions.get("audience_pipeline")  # type: ignore[arg-type]
    if not state:
        return None
    return ensure_celery_app(app, state)
