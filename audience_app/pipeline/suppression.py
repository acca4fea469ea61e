"""
Purchase suppression: drop buyers from a tenant's audience.

Each purchase row is matched with the name-qualified strategies only, so a
shared household email never removes the wrong person. Matches are deleted
locally with an audit row, then removed from the remote audience on a best
effort basis; a remote failure is logged and never undoes the local delete.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from audience_app.errors import UnknownTenantError
from audience_app.models import IdentityRecord, PurchaseRemoval, RunStatus, SyncLog, Tenant, db

from .ingestion import configured_country_code
from .matching import MatchMode, find_match
from .normalizer import ContactRecord, parse_contacts
from .sync import AudienceSyncService, format_sync_records

logger = logging.getLogger(__name__)


@dataclass
class SuppressionSummary:
    tenant_id: int
    file_name: str | None
    processed: int = 0
    matched: int = 0
    removed_locally: int = 0
    removed_remotely: int = 0
    not_found: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "tenant_id": self.tenant_id,
            "file_name": self.file_name,
            "records_processed": self.processed,
            "matches_found": self.matched,
            "removed_from_audience": self.removed_locally,
            "removed_from_remote": self.removed_remotely,
            "not_found": self.not_found,
            "errors": list(self.errors),
        }


def suppress_purchasers(
    tenant_id: int,
    content: str | None,
    *,
    file_name: str | None = None,
    service: AudienceSyncService | None = None,
    session: Session | None = None,
) -> SuppressionSummary:
    """
    Remove every audience member that appears in the purchase CSV ``content``.

    Parse errors propagate before anything is deleted. When ``service`` is
    given and the tenant has an audience, removed members are also deleted
    remotely and the attempt is written to ``SyncLog``.
    """

    session = session or db.session
    tenant = session.get(Tenant, tenant_id)
    if tenant is None:
        raise UnknownTenantError(tenant_id)
    tenant_name = tenant.name
    audience_id = tenant.audience_id

    contacts = parse_contacts(content, default_country_code=configured_country_code())
    summary = SuppressionSummary(tenant_id=tenant_id, file_name=file_name, processed=len(contacts))
    logger.info(
        "Purchase suppression parsed",
        extra={"event": "purchase_upload_parsed", "tenant": tenant_name, "records_found": len(contacts)},
    )

    removed: list[ContactRecord] = []
    for row_number, contact in enumerate(contacts, start=1):
        try:
            match = find_match(session, contact, tenant_id, MatchMode.APPEND)
            if not match.is_match:
                summary.not_found += 1
                continue
            summary.matched += 1
            member: IdentityRecord = match.record
            session.add(
                PurchaseRemoval(
                    tenant_id=tenant_id,
                    email=contact.email,
                    phone=contact.phone,
                    first_name=contact.first_name,
                    last_name=contact.last_name,
                    matched_by=match.strategy.value,
                    source_file=file_name,
                )
            )
            session.delete(member)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            summary.errors.append(f"Row {row_number}: {exc}")
            logger.error(
                "Failed to remove purchaser from audience",
                extra={"event": "purchase_upload_delete_error", "tenant": tenant_name, "row": row_number},
            )
            continue
        summary.removed_locally += 1
        removed.append(contact)

    if removed and audience_id and service is not None:
        summary.removed_remotely = _remove_remotely(session, service, tenant_id, audience_id, tenant_name, removed)

    logger.info(
        "Purchase suppression complete",
        extra={
            "event": "purchase_upload_complete",
            "tenant": tenant_name,
            "matches_found": summary.matched,
            "removed_from_audience": summary.removed_locally,
            "removed_from_remote": summary.removed_remotely,
        },
    )
    return summary


def _remove_remotely(
    session: Session,
    service: AudienceSyncService,
    tenant_id: int,
    audience_id: str,
    tenant_name: str,
    removed: list[ContactRecord],
) -> int:
    sendable = len(format_sync_records(removed))
    if not sendable:
        return 0

    status, uploaded, error_message = RunStatus.COMPLETED, 0, None
    try:
        uploaded = service.remove(audience_id, removed, tenant_name).uploaded
    except Exception as exc:
        status, error_message = RunStatus.FAILED, str(exc)
        uploaded = getattr(exc, "uploaded", 0)
        logger.warning(
            "Remote removal failed; local removals stand",
            extra={"event": "purchase_upload_meta_failed", "tenant": tenant_name, "error": error_message},
        )

    session.add(
        SyncLog(
            tenant_id=tenant_id,
            audience_id=audience_id,
            sync_type="remove",
            status=status,
            total_records=sendable,
            success_count=uploaded,
            failed_count=sendable - uploaded,
            error_message=error_message,
        )
    )
    try:
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Failed to record remote removal", extra={"event": "purchase_upload_log_failed"})
    return uploaded
