"""
Direct edits and read-side summaries of a tenant's audience members.

Edits run through the same planner as file ingestion, so a NO_IDENTIFIER
member that gains an email or phone is re-enrolled exactly as it would be by
a later file: status ACTIVE, a full retention window and a fresh
``date_added``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from audience_app.errors import InvalidFieldError, MemberNotFoundError, PersistenceError, UnknownTenantError
from audience_app.models import IdentityRecord, IdentityStatus, Tenant, db
from audience_app.models.base import utcnow

from .ingestion import configured_country_code
from .normalizer import normalize_email, normalize_phone
from .reconcile import ReconcileSettings, current_settings, plan_edit

logger = logging.getLogger(__name__)

EDITABLE_FIELDS: tuple[str, ...] = ("email", "phone", "first_name", "last_name")


@dataclass(frozen=True)
class IdentityEdit:
    record: IdentityRecord
    fields_updated: tuple[str, ...]
    previous_status: IdentityStatus

    @property
    def reenrolled(self) -> bool:
        return self.previous_status is IdentityStatus.NO_IDENTIFIER and self.record.status is IdentityStatus.ACTIVE

    def as_dict(self) -> dict[str, object]:
        return {
            **self.record.to_dict(),
            "fields_updated": list(self.fields_updated),
            "reenrolled": self.reenrolled,
        }


def _clean_fields(fields: dict[str, Any]) -> dict[str, str | None]:
    unknown = sorted(set(fields) - set(EDITABLE_FIELDS))
    if unknown:
        raise InvalidFieldError(unknown[0], f"Unknown field(s): {', '.join(unknown)}")

    cleaned: dict[str, str | None] = {}
    for name, value in fields.items():
        raw = "" if value is None else str(value).strip()
        if name == "email":
            cleaned[name] = normalize_email(raw) if raw else None
            if raw and cleaned[name] is None:
                raise InvalidFieldError(name, f"Invalid email address '{raw}'")
        elif name == "phone":
            cleaned[name] = normalize_phone(raw, default_country_code=configured_country_code()) if raw else None
            if raw and cleaned[name] is None:
                raise InvalidFieldError(name, f"Invalid phone number '{raw}'")
        else:
            cleaned[name] = raw
    return cleaned


def update_identity(
    record_id: int,
    *,
    settings: ReconcileSettings | None = None,
    session: Session | None = None,
    **fields: Any,
) -> IdentityEdit:
    """
    Apply an explicit edit to one audience member.

    ``fields`` may hold any of ``EDITABLE_FIELDS``; ``None`` or a blank value
    clears an identifier. Raises ``MemberNotFoundError`` for an unknown id and
    ``InvalidFieldError`` before any write when a value does not normalize.
    """

    session = session or db.session
    settings = settings or current_settings()

    record = session.get(IdentityRecord, record_id)
    if record is None:
        raise MemberNotFoundError(record_id)
    cleaned = _clean_fields(fields)
    previous_status = record.status

    plan = plan_edit(record, cleaned, now=utcnow(), retention_days=settings.retention_days)
    if plan.changes:
        for name, value in plan.changes.items():
            setattr(record, name, value)
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError(f"Failed to update audience member {record_id}: {exc}") from exc

    edit = IdentityEdit(record=record, fields_updated=plan.fields_updated, previous_status=previous_status)
    logger.info(
        "Audience member edited",
        extra={
            "event": "member_updated",
            "member_id": record_id,
            "fields_updated": ",".join(plan.fields_updated),
            "reenrolled": edit.reenrolled,
        },
    )
    return edit


def no_identifier_stats(tenant_id: int | None = None, *, session: Session | None = None) -> dict[str, object]:
    """Breakdown of NO_IDENTIFIER members, optionally for a single tenant."""

    session = session or db.session
    if tenant_id is not None and session.get(Tenant, tenant_id) is None:
        raise UnknownTenantError(tenant_id)

    conditions = [IdentityRecord.status == IdentityStatus.NO_IDENTIFIER]
    if tenant_id is not None:
        conditions.append(IdentityRecord.tenant_id == tenant_id)

    def count(*extra) -> int:
        stmt = select(func.count(IdentityRecord.id)).where(*conditions, *extra)
        return int(session.scalar(stmt) or 0)

    total = count()
    missing_email_only = count(IdentityRecord.email.is_(None), IdentityRecord.phone.is_not(None))
    missing_phone_only = count(IdentityRecord.phone.is_(None), IdentityRecord.email.is_not(None))
    missing_both = count(IdentityRecord.email.is_(None), IdentityRecord.phone.is_(None))

    by_tenant_rows = session.execute(
        select(Tenant.id, Tenant.name, func.count(IdentityRecord.id))
        .join(IdentityRecord, IdentityRecord.tenant_id == Tenant.id)
        .where(*conditions)
        .group_by(Tenant.id, Tenant.name)
        .order_by(func.count(IdentityRecord.id).desc(), Tenant.id)
    ).all()
    oldest = session.scalar(select(func.min(IdentityRecord.date_added)).where(*conditions))

    return {
        "total": total,
        "missing_email_only": missing_email_only,
        "missing_phone_only": missing_phone_only,
        "missing_both": missing_both,
        "by_tenant": [
            {"tenant_id": row_id, "tenant_name": name, "count": int(row_count)}
            for row_id, name, row_count in by_tenant_rows
        ],
        "oldest_date_added": oldest.isoformat() if oldest else None,
        "breakdown_valid": missing_email_only + missing_phone_only + missing_both == total,
    }
