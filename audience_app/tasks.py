"""
Audience pipeline Celery tasks.

Every task runs inside the Flask app context supplied by ``FlaskContextTask``
and returns a JSON-serialisable summary.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from celery import shared_task
from flask import current_app

from audience_app.errors import PipelineError, UnknownTenantError
from audience_app.models import Tenant, db
from audience_app.pipeline import ingest_contact_file, run_daily_pipeline, run_retention_tick, sync_tenant_audience
from audience_app.services import build_sync_service, get_source_fetcher, get_vault


@shared_task(name="pipeline.healthcheck", bind=True)
def pipeline_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by ``flask pipeline worker ping`` and the health endpoint."""
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name="pipeline.run_daily", bind=True)
def run_daily(self, *, mode: str = "append") -> dict[str, Any]:
    app = current_app._get_current_object()
    try:
        summary = run_daily_pipeline(
            get_source_fetcher(app),
            sync_service=build_sync_service(app),
            vault=get_vault(app),
            mode=mode,
        )
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception(
            "Daily pipeline run failed",
            extra={"event": "cron_error", "error": str(exc)},
        )
        raise
    return summary.as_dict()


@shared_task(name="pipeline.ingest_file", bind=True)
def ingest_file(
    self, *, tenant_id: int, file_path: str, mode: str = "append", keep_file: bool = True
) -> dict[str, Any]:
    """Ingest a CSV already on disk; the processing log records success or failure."""

    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"CSV file not found: {file_path}")

    try:
        content = path.read_text(encoding="utf-8-sig")
        result = ingest_contact_file(tenant_id, path.name, content, mode=mode)
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception(
            "Ingestion task failed",
            extra={"event": "ingest_task_failed", "tenant_id": tenant_id, "file_name": path.name, "error": str(exc)},
        )
        raise
    finally:
        if not keep_file:
            path.unlink(missing_ok=True)
    return result.as_dict()


@shared_task(name="pipeline.sync_tenant", bind=True)
def sync_tenant(self, *, tenant_id: int) -> dict[str, Any]:
    app = current_app._get_current_object()
    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None:
        raise UnknownTenantError(tenant_id)

    service = build_sync_service(app)
    if service is None:
        raise PipelineError("Meta API credentials not configured; cannot sync")

    try:
        result = sync_tenant_audience(tenant_id, service)
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception(
            "Tenant sync task failed",
            extra={"event": "sync_task_failed", "tenant_id": tenant_id, "error": str(exc)},
        )
        raise
    return result.as_dict()


@shared_task(name="pipeline.retention_tick", bind=True)
def retention_tick(self) -> dict[str, int]:
    return run_retention_tick().as_dict()
