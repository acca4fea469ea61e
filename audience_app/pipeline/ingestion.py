"""
Run bookkeeping around ingestion and sync.

``ingest_contact_file`` wraps parse + reconcile with a ``ProcessingLog`` row
that is opened before any work and finalized exactly once. ``sync_tenant_audience``
pushes a tenant's eligible members and records the attempt in ``SyncLog``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import current_app, has_app_context
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from audience_app.errors import PersistenceError, PipelineError, SyncFailedError, UnknownTenantError
from audience_app.models import IdentityRecord, ProcessingLog, RunStatus, SyncLog, Tenant, db

from .matching import MatchMode
from .normalizer import ContactRecord, parse_contacts
from .reconcile import ReconcileSettings, ReconcileSummary, reconcile_contacts
from .sync import AudienceSyncService

logger = logging.getLogger(__name__)

_MAX_LOGGED_ERRORS = 20


@dataclass(frozen=True)
class IngestionResult:
    log_id: int
    file_name: str
    summary: ReconcileSummary
    total: int

    def as_dict(self) -> dict[str, object]:
        return {"log_id": self.log_id, "file_name": self.file_name, "total": self.total, **self.summary.as_dict()}


@dataclass(frozen=True)
class TenantSyncResult:
    tenant_id: int
    audience_id: str
    eligible: int
    uploaded: int
    excluded: int
    sync_log_id: int | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "tenant_id": self.tenant_id,
            "audience_id": self.audience_id,
            "eligible": self.eligible,
            "uploaded": self.uploaded,
            "excluded": self.excluded,
            "sync_log_id": self.sync_log_id,
        }


def configured_country_code() -> str | None:
    if has_app_context():
        return current_app.config.get("PHONE_DEFAULT_COUNTRY_CODE")
    return None


def _load_tenant(session: Session, tenant_id: int) -> Tenant:
    tenant = session.get(Tenant, tenant_id)
    if tenant is None:
        raise UnknownTenantError(tenant_id)
    return tenant


def _finalize_log(session: Session, log_id: int, status: RunStatus, **counts) -> None:
    log = session.get(ProcessingLog, log_id)
    if log is None:
        raise PersistenceError(f"Processing log {log_id} disappeared before it was finalized")
    log.finalize(status, **counts)
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(f"Failed to finalize processing log {log_id}: {exc}") from exc


def _summarize_errors(errors: list[str]) -> str | None:
    if not errors:
        return None
    shown = errors[:_MAX_LOGGED_ERRORS]
    remainder = len(errors) - len(shown)
    message = "; ".join(shown)
    if remainder:
        message = f"{message}; ... {remainder} more"
    return message


def ingest_contact_file(
    tenant_id: int,
    file_name: str,
    content: str | None,
    *,
    mode: MatchMode | str = MatchMode.APPEND,
    settings: ReconcileSettings | None = None,
    session: Session | None = None,
) -> IngestionResult:
    """
    Parse ``content`` and reconcile it into ``tenant_id``'s audience.

    A ``ProcessingLog`` row is committed in ``processing`` state before any
    parsing. It ends ``completed`` with the reconcile counts, or ``failed``
    with the error message, in which case the error is re-raised.
    """

    session = session or db.session
    tenant = _load_tenant(session, tenant_id)
    tenant_name = tenant.name

    log = ProcessingLog(tenant_id=tenant_id, file_name=file_name, status=RunStatus.PROCESSING)
    session.add(log)
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(f"Failed to open processing log for {file_name}: {exc}") from exc
    log_id = log.id

    logger.info(
        "Ingestion started",
        extra={"event": "ingest_start", "tenant": tenant_name, "file_name": file_name, "log_id": log_id},
    )
    try:
        contacts = parse_contacts(content, default_country_code=configured_country_code())
        summary = reconcile_contacts(contacts, tenant_id, file_name, mode=mode, settings=settings, session=session)
    except Exception as exc:
        session.rollback()
        _finalize_log(session, log_id, RunStatus.FAILED, error_message=str(exc))
        logger.error(
            "Ingestion failed",
            extra={"event": "ingest_failed", "tenant": tenant_name, "file_name": file_name, "error": str(exc)},
        )
        raise

    _finalize_log(
        session,
        log_id,
        RunStatus.COMPLETED,
        total=len(contacts),
        created=summary.created,
        updated=summary.updated,
        skipped=summary.skipped,
        no_identifier=summary.no_identifier,
        error_message=_summarize_errors(summary.errors),
    )
    logger.info(
        "Ingestion complete",
        extra={
            "event": "ingest_complete",
            "tenant": tenant_name,
            "file_name": file_name,
            "created": summary.created,
            "updated": summary.updated,
            "skipped": summary.skipped,
            "row_errors": len(summary.errors),
        },
    )
    return IngestionResult(log_id=log_id, file_name=file_name, summary=summary, total=len(contacts))


def eligible_members(session: Session, tenant_id: int) -> list[ContactRecord]:
    """Snapshot the tenant's members with days remaining, oldest first."""

    rows = session.scalars(
        select(IdentityRecord)
        .where(IdentityRecord.tenant_id == tenant_id, IdentityRecord.remaining_days > 0)
        .order_by(IdentityRecord.id)
    ).all()
    return [
        ContactRecord(first_name=row.first_name, last_name=row.last_name, email=row.email, phone=row.phone)
        for row in rows
    ]


def _write_sync_log(session: Session, **values) -> int:
    sync_log = SyncLog(**values)
    session.add(sync_log)
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(f"Failed to record sync log: {exc}") from exc
    return sync_log.id


def sync_tenant_audience(
    tenant_id: int,
    service: AudienceSyncService,
    *,
    session: Session | None = None,
) -> TenantSyncResult:
    """
    Push every eligible member of ``tenant_id`` to its remote audience.

    Nothing is written when the tenant has no eligible members. A failed push
    is recorded as a failed ``SyncLog`` row and re-raised.
    """

    session = session or db.session
    tenant = _load_tenant(session, tenant_id)
    if not tenant.has_audience:
        raise PipelineError(f"Tenant {tenant.name} has no remote audience configured")
    tenant_name = tenant.name
    audience_id = tenant.audience_id

    members = eligible_members(session, tenant_id)
    # Release the read transaction before talking to the remote platform.
    session.commit()
    if not members:
        return TenantSyncResult(tenant_id=tenant_id, audience_id=audience_id, eligible=0, uploaded=0, excluded=0)

    sendable = sum(1 for member in members if member.has_identifier)
    try:
        result = service.sync(audience_id, members, tenant_name)
    except SyncFailedError as exc:
        _write_sync_log(
            session,
            tenant_id=tenant_id,
            audience_id=audience_id,
            sync_type="add",
            status=RunStatus.FAILED,
            total_records=sendable,
            success_count=exc.uploaded,
            failed_count=sendable - exc.uploaded,
            error_message=str(exc),
        )
        raise
    except Exception as exc:
        _write_sync_log(
            session,
            tenant_id=tenant_id,
            audience_id=audience_id,
            sync_type="add",
            status=RunStatus.FAILED,
            total_records=sendable,
            success_count=0,
            failed_count=sendable,
            error_message=str(exc),
        )
        raise

    sync_log_id = _write_sync_log(
        session,
        tenant_id=tenant_id,
        audience_id=audience_id,
        sync_type="add",
        status=RunStatus.COMPLETED,
        total_records=sendable,
        success_count=result.uploaded,
        failed_count=sendable - result.uploaded,
    )
    return TenantSyncResult(
        tenant_id=tenant_id,
        audience_id=audience_id,
        eligible=len(members),
        uploaded=result.uploaded,
        excluded=result.excluded,
        sync_log_id=sync_log_id,
    )
