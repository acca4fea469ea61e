"""
Audience reconciliation and sync service.

``init_audience_pipeline`` wires the Celery worker, HTTP routes and the
``flask pipeline`` command group onto a Flask app and records shared
collaborators in ``app.extensions['audience_pipeline']``.
"""

from __future__ import annotations

from flask import Flask

from .celery_app import ensure_celery_app, get_celery_app
from .cli import pipeline_cli
from .routes import init_routes
from .services import EXTENSION_KEY, ensure_extension_state

__all__ = [
    "EXTENSION_KEY",
    "get_celery_app",
    "init_audience_pipeline",
]


def _set_cli(app: Flask) -> None:
    # Avoid duplicate registrations when running tests
    if pipeline_cli.name in app.cli.commands:
        app.cli.commands.pop(pipeline_cli.name)
    app.cli.add_command(pipeline_cli)


def init_audience_pipeline(app: Flask) -> None:
    """Mount routes, CLI commands and the Celery app for the pipeline."""
    state = ensure_extension_state(app)
    ensure_celery_app(app, state)
    init_routes(app)
    _set_cli(app)
    app.logger.info(
        "Audience pipeline initialised",
        extra={"event": "pipeline_init", "beat_enabled": bool(app.config.get("PIPELINE_BEAT_ENABLED", True))},
    )
