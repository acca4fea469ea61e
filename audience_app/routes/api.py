"""
JSON endpoints for the cron trigger, manual uploads and syncs, member edits,
history and health checks.

Every endpoint except ``/api/health`` requires ``Authorization: Bearer
<CRON_SECRET>``. Failures are returned as ``{"success": false, "error": ...}``.
"""

from __future__ import annotations

import hmac
import time
from http import HTTPStatus

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.utils import secure_filename

from audience_app.errors import (
    FormatError,
    InvalidFieldError,
    MemberNotFoundError,
    PersistenceError,
    PipelineError,
    SyncFailedError,
    UnknownTenantError,
)
from audience_app.models import Tenant, db
from audience_app.pipeline import (
    MatchMode,
    ingest_contact_file,
    no_identifier_stats,
    processing_history,
    removal_history,
    run_daily_pipeline,
    suppress_purchasers,
    sync_tenant_audience,
    update_identity,
)
from audience_app.services import build_sync_service, get_source_fetcher, get_vault

api_blueprint = Blueprint("api", __name__, url_prefix="/api")

MANUAL_UPLOAD_PREFIX = "MANUAL_UPLOAD: "


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"success": False, "error": message}), status


def _ensure_cron_secret():
    expected = current_app.config.get("CRON_SECRET")
    if not expected:
        return _json_error("CRON_SECRET is not configured.", HTTPStatus.SERVICE_UNAVAILABLE)
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme != "Bearer" or not token or not hmac.compare_digest(token.strip(), expected):
        return _json_error("Unauthorized", HTTPStatus.UNAUTHORIZED)
    return None


def _read_upload():
    """Return ``(tenant, file_name, content)`` or an error response tuple."""
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        return None, _json_error("No file provided", HTTPStatus.BAD_REQUEST)
    if not upload.filename.lower().endswith(".csv"):
        return None, _json_error("Only CSV files allowed", HTTPStatus.BAD_REQUEST)

    raw_tenant_id = request.form.get("tenant_id") or request.form.get("clientId")
    if not raw_tenant_id:
        return None, _json_error("tenant_id is required", HTTPStatus.BAD_REQUEST)
    try:
        tenant_id = int(raw_tenant_id)
    except ValueError:
        tenant_id = 0
    if tenant_id < 1:
        return None, _json_error("Invalid tenant_id", HTTPStatus.BAD_REQUEST)

    payload = upload.read()
    max_bytes = int(current_app.config.get("MAX_UPLOAD_MB", 10)) * 1024 * 1024
    if len(payload) > max_bytes:
        return None, _json_error(
            f"File exceeds {current_app.config.get('MAX_UPLOAD_MB', 10)}MB limit", HTTPStatus.REQUEST_ENTITY_TOO_LARGE
        )
    try:
        content = payload.decode("utf-8-sig")
    except UnicodeDecodeError:
        return None, _json_error("File must be UTF-8 encoded", HTTPStatus.BAD_REQUEST)

    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None:
        return None, _json_error("Tenant not found", HTTPStatus.NOT_FOUND)
    return (tenant, secure_filename(upload.filename) or "upload.csv", content), None


@api_blueprint.get("/health")
def api_health():
    payload = {"status": "ok", "database": "ok"}
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        current_app.logger.error("Health check database query failed", extra={"event": "health_db_failed"})
        payload.update(status="degraded", database="error", error=str(exc))
        return jsonify(payload), HTTPStatus.SERVICE_UNAVAILABLE
    return jsonify(payload), HTTPStatus.OK


@api_blueprint.get("/cron/daily")
def api_cron_daily():
    denied = _ensure_cron_secret()
    if denied is not None:
        return denied

    app = current_app._get_current_object()
    try:
        summary = run_daily_pipeline(
            get_source_fetcher(app),
            sync_service=build_sync_service(app),
            vault=get_vault(app),
        )
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception("Daily run failed", extra={"event": "cron_daily_failed", "error": str(exc)})
        return _json_error(str(exc) or "Cron job failed", HTTPStatus.INTERNAL_SERVER_ERROR)
    return jsonify({"success": True, **summary.as_dict()}), HTTPStatus.OK


@api_blueprint.post("/audience/upload")
def api_audience_upload():
    denied = _ensure_cron_secret()
    if denied is not None:
        return denied

    parsed, error = _read_upload()
    if error is not None:
        return error
    tenant, file_name, content = parsed
    if not tenant.is_active:
        return _json_error("Tenant is not active", HTTPStatus.BAD_REQUEST)

    mode = request.form.get("mode", MatchMode.APPEND.value)
    if mode not in {item.value for item in MatchMode}:
        return _json_error(f"Unknown mode '{mode}'", HTTPStatus.BAD_REQUEST)

    started = time.perf_counter()
    try:
        result = ingest_contact_file(tenant.id, f"{MANUAL_UPLOAD_PREFIX}{file_name}", content, mode=mode)
    except FormatError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    except Exception as exc:
        current_app.logger.exception("Manual upload failed", extra={"event": "manual_upload_failed"})
        return _json_error(str(exc) or "Upload failed", HTTPStatus.INTERNAL_SERVER_ERROR)

    summary = result.summary
    return (
        jsonify(
            {
                "success": True,
                "log_id": result.log_id,
                "total": result.total,
                "created": summary.created,
                "updated": summary.updated,
                "skipped": summary.skipped,
                "no_identifier": summary.no_identifier,
                "errors": list(summary.errors),
                "processing_time_ms": int((time.perf_counter() - started) * 1000),
            }
        ),
        HTTPStatus.OK,
    )


@api_blueprint.post("/purchases/upload")
def api_purchases_upload():
    denied = _ensure_cron_secret()
    if denied is not None:
        return denied

    parsed, error = _read_upload()
    if error is not None:
        return error
    tenant, file_name, content = parsed
    if not tenant.has_audience:
        return _json_error("Tenant has no remote audience configured", HTTPStatus.BAD_REQUEST)

    try:
        summary = suppress_purchasers(
            tenant.id,
            content,
            file_name=file_name,
            service=build_sync_service(current_app._get_current_object()),
        )
    except FormatError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    except PipelineError as exc:
        current_app.logger.exception("Purchase upload failed", extra={"event": "purchase_upload_error"})
        return _json_error(str(exc), HTTPStatus.INTERNAL_SERVER_ERROR)

    return jsonify({"success": True, **summary.as_dict()}), HTTPStatus.OK


def _tenant_id_param(raw) -> int | None:
    try:
        tenant_id = int(raw)
    except (TypeError, ValueError):
        return None
    return tenant_id if tenant_id >= 1 else None


def _history_response(loader):
    raw_tenant_id = request.args.get("tenant_id") or request.args.get("clientId")
    if not raw_tenant_id:
        return _json_error("tenant_id is required", HTTPStatus.BAD_REQUEST)
    tenant_id = _tenant_id_param(raw_tenant_id)
    if tenant_id is None:
        return _json_error("Invalid tenant_id", HTTPStatus.BAD_REQUEST)
    try:
        payload = loader(tenant_id, request.args.get("limit", type=int))
    except UnknownTenantError:
        return _json_error("Tenant not found", HTTPStatus.NOT_FOUND)
    return jsonify({"success": True, **payload}), HTTPStatus.OK


@api_blueprint.get("/process/history")
def api_process_history():
    denied = _ensure_cron_secret()
    if denied is not None:
        return denied
    return _history_response(processing_history)


@api_blueprint.get("/purchases/history")
def api_purchases_history():
    denied = _ensure_cron_secret()
    if denied is not None:
        return denied
    return _history_response(removal_history)


@api_blueprint.get("/audience/no-identifier/stats")
def api_no_identifier_stats():
    denied = _ensure_cron_secret()
    if denied is not None:
        return denied

    tenant_id = None
    raw_tenant_id = request.args.get("tenant_id")
    if raw_tenant_id:
        tenant_id = _tenant_id_param(raw_tenant_id)
        if tenant_id is None:
            return _json_error("Invalid tenant_id", HTTPStatus.BAD_REQUEST)
    try:
        stats = no_identifier_stats(tenant_id)
    except UnknownTenantError:
        return _json_error("Tenant not found", HTTPStatus.NOT_FOUND)
    return jsonify({"success": True, **stats}), HTTPStatus.OK


# Request keys accepted by the member edit endpoint, camelCase for dashboard callers
_MEMBER_FIELD_ALIASES = {
    "email": "email",
    "phone": "phone",
    "first_name": "first_name",
    "firstName": "first_name",
    "last_name": "last_name",
    "lastName": "last_name",
}


@api_blueprint.patch("/audience/<int:member_id>")
def api_update_member(member_id: int):
    denied = _ensure_cron_secret()
    if denied is not None:
        return denied

    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return _json_error("Request body must be a JSON object", HTTPStatus.BAD_REQUEST)
    unknown = sorted(key for key in body if key not in _MEMBER_FIELD_ALIASES)
    if unknown:
        return _json_error(f"Unknown field(s): {', '.join(unknown)}", HTTPStatus.BAD_REQUEST)
    fields = {_MEMBER_FIELD_ALIASES[key]: value for key, value in body.items()}

    try:
        edit = update_identity(member_id, **fields)
    except MemberNotFoundError:
        return _json_error("Audience member not found", HTTPStatus.NOT_FOUND)
    except InvalidFieldError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    except PersistenceError as exc:
        current_app.logger.exception("Member update failed", extra={"event": "member_update_failed"})
        return _json_error(str(exc), HTTPStatus.INTERNAL_SERVER_ERROR)

    message = (
        "Record updated and now eligible for audience sync" if edit.reenrolled else "Record updated successfully"
    )
    return jsonify({"success": True, "message": message, "member": edit.as_dict()}), HTTPStatus.OK


@api_blueprint.post("/sync")
def api_sync_tenant():
    denied = _ensure_cron_secret()
    if denied is not None:
        return denied

    body = request.get_json(silent=True) or {}
    tenant_id = _tenant_id_param(body.get("tenant_id", body.get("clientId")))
    if tenant_id is None:
        return _json_error("A positive integer tenant_id is required", HTTPStatus.BAD_REQUEST)
    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None:
        return _json_error("Tenant not found", HTTPStatus.NOT_FOUND)
    if not tenant.is_active:
        return _json_error("Tenant is not active", HTTPStatus.BAD_REQUEST)
    if not tenant.has_audience:
        return _json_error("Tenant has no remote audience configured", HTTPStatus.BAD_REQUEST)

    service = build_sync_service(current_app._get_current_object())
    if service is None:
        return _json_error("Remote platform credentials are not configured", HTTPStatus.SERVICE_UNAVAILABLE)

    started = time.perf_counter()
    try:
        result = sync_tenant_audience(tenant.id, service)
    except SyncFailedError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_GATEWAY)
    except PipelineError as exc:
        current_app.logger.exception("Manual sync failed", extra={"event": "manual_sync_failed"})
        return _json_error(str(exc), HTTPStatus.INTERNAL_SERVER_ERROR)

    return (
        jsonify(
            {
                "success": True,
                **result.as_dict(),
                "sync_time_ms": int((time.perf_counter() - started) * 1000),
            }
        ),
        HTTPStatus.OK,
    )
