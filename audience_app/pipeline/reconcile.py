"""
Reconcile parsed contacts into a tenant's audience members.

Small files are processed row by row, committing after each decision. Files
at or above the batch threshold resolve every match first, bulk-insert the
new members in one statement and apply updates in bounded transactions. Both
paths share the same create/update/skip rules so they yield the same result
for the same input.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Mapping, Sequence

from flask import current_app, has_app_context
from sqlalchemy import insert
from sqlalchemy.orm import Session

from audience_app.errors import RecordError, UnknownTenantError
from audience_app.models import IdentityRecord, IdentityStatus, Tenant, db, derive_status, match_keys
from audience_app.models.base import utcnow

from .matching import MatchMode, MatchResult, MatchStrategy, find_match
from .metrics import record_match, record_reconcile_action
from .normalizer import ContactRecord

logger = logging.getLogger(__name__)

RowAction = Literal["created", "updated", "skipped"]
UpdatePolicy = Literal["overwrite", "diff"]

UPDATE_POLICIES: tuple[str, ...] = ("overwrite", "diff")
_MUTABLE_FIELDS: tuple[str, ...] = ("email", "phone", "first_name", "last_name")


@dataclass(frozen=True)
class ReconcileSettings:
    retention_days: int = 30
    batch_threshold: int = 100
    update_chunk_size: int = 100
    bulk_update_policy: UpdatePolicy = "overwrite"

    def __post_init__(self) -> None:
        if self.bulk_update_policy not in UPDATE_POLICIES:
            raise ValueError(
                f"Unknown bulk update policy '{self.bulk_update_policy}'. Expected one of: {', '.join(UPDATE_POLICIES)}."
            )

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ReconcileSettings":
        return cls(
            retention_days=int(config.get("RETENTION_DAYS_DEFAULT", 30)),
            batch_threshold=int(config.get("RECONCILE_BATCH_THRESHOLD", 100)),
            update_chunk_size=int(config.get("RECONCILE_UPDATE_CHUNK_SIZE", 100)),
            bulk_update_policy=config.get("RECONCILE_BULK_UPDATE_POLICY", "overwrite"),
        )


def current_settings() -> ReconcileSettings:
    if has_app_context():
        return ReconcileSettings.from_config(current_app.config)
    return ReconcileSettings()


@dataclass(frozen=True)
class RowOutcome:
    """Decision taken for one input row (``row_number`` is 1-based)."""

    row_number: int
    action: RowAction
    record_id: int | None
    matched_by: MatchStrategy = MatchStrategy.NONE
    fields_updated: tuple[str, ...] = ()


@dataclass
class ReconcileSummary:
    """Aggregate results from reconciling one file for one tenant."""

    tenant_id: int
    source_file: str | None
    mode: MatchMode
    strategy: Literal["sequential", "batched"] = "sequential"
    created: int = 0
    updated: int = 0
    skipped: int = 0
    no_identifier: int = 0
    errors: list[str] = field(default_factory=list)
    outcomes: list[RowOutcome] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.created + self.updated + self.skipped

    def tally(self, outcome: RowOutcome, contact: ContactRecord) -> None:
        self.outcomes.append(outcome)
        if outcome.action == "created":
            self.created += 1
        elif outcome.action == "updated":
            self.updated += 1
        else:
            self.skipped += 1
        if not contact.has_identifier:
            self.no_identifier += 1

    def as_dict(self) -> dict[str, object]:
        return {
            "tenant_id": self.tenant_id,
            "source_file": self.source_file,
            "mode": self.mode.value,
            "strategy": self.strategy,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "no_identifier": self.no_identifier,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class _UpdatePlan:
    changes: dict[str, object]
    fields_updated: tuple[str, ...]

    @property
    def action(self) -> RowAction:
        return "updated" if self.fields_updated else "skipped"


def _resolve_policy(mode: MatchMode, settings: ReconcileSettings) -> UpdatePolicy:
    if mode is MatchMode.MATCH_APPEND:
        return "diff"
    return settings.bulk_update_policy


def _enrollment_changes(
    record: IdentityRecord, email: str | None, phone: str | None, *, now: datetime, retention_days: int
) -> dict[str, object]:
    """Status transition for the identifiers ``record`` holds after an update; gaining one re-enrolls it."""

    new_status = derive_status(email, phone)
    if new_status is record.status:
        return {}
    changes: dict[str, object] = {"status": new_status}
    if new_status is IdentityStatus.ACTIVE:
        changes["remaining_days"] = retention_days
        changes["date_added"] = now
    return changes


def _plan_overwrite(
    record: IdentityRecord, contact: ContactRecord, *, now: datetime, retention_days: int
) -> _UpdatePlan:
    """Incoming row is authoritative: copy every field and refresh retention."""

    changes: dict[str, object] = {}
    fields_updated: list[str] = []
    for name in _MUTABLE_FIELDS:
        incoming = getattr(contact, name)
        if incoming != getattr(record, name):
            changes[name] = incoming
            fields_updated.append(name)

    enrollment = _enrollment_changes(record, contact.email, contact.phone, now=now, retention_days=retention_days)
    if enrollment:
        changes.update(enrollment)
        fields_updated.append("status")

    changes["remaining_days"] = retention_days
    changes["updated_at"] = now
    return _UpdatePlan(changes=changes, fields_updated=tuple(fields_updated))


def _plan_diff(record: IdentityRecord, contact: ContactRecord, *, now: datetime, retention_days: int) -> _UpdatePlan:
    """Apply only non-empty fields that differ; re-enroll when the first identifier arrives."""

    changes: dict[str, object] = {}
    fields_updated: list[str] = []
    for name in _MUTABLE_FIELDS:
        incoming = getattr(contact, name)
        if incoming and incoming != getattr(record, name):
            changes[name] = incoming
            fields_updated.append(name)

    enrollment = _enrollment_changes(
        record,
        changes.get("email", record.email),
        changes.get("phone", record.phone),
        now=now,
        retention_days=retention_days,
    )
    if enrollment:
        changes.update(enrollment)
        fields_updated.append("status")

    if fields_updated:
        changes["updated_at"] = now
    return _UpdatePlan(changes=changes, fields_updated=tuple(fields_updated))


def plan_update(
    record: IdentityRecord,
    contact: ContactRecord,
    *,
    policy: UpdatePolicy,
    now: datetime,
    retention_days: int,
) -> _UpdatePlan:
    planner = _plan_overwrite if policy == "overwrite" else _plan_diff
    return planner(record, contact, now=now, retention_days=retention_days)


def plan_edit(
    record: IdentityRecord, fields: Mapping[str, str | None], *, now: datetime, retention_days: int
) -> _UpdatePlan:
    """
    Plan an explicit edit of ``fields`` on ``record``.

    Unlike file ingestion an edit may clear an identifier (``None``). Retention
    is only reset when the edit gives a NO_IDENTIFIER record its first
    identifier.
    """

    changes: dict[str, object] = {}
    fields_updated: list[str] = []
    for name, incoming in fields.items():
        if name not in _MUTABLE_FIELDS:
            raise ValueError(f"Field '{name}' cannot be edited")
        if incoming != getattr(record, name):
            changes[name] = incoming
            fields_updated.append(name)

    enrollment = _enrollment_changes(
        record,
        changes.get("email", record.email),
        changes.get("phone", record.phone),
        now=now,
        retention_days=retention_days,
    )
    if enrollment:
        changes.update(enrollment)
        fields_updated.append("status")

    if fields_updated:
        changes["updated_at"] = now
    return _UpdatePlan(changes=changes, fields_updated=tuple(fields_updated))


def _apply_plan(record: IdentityRecord, plan: _UpdatePlan) -> None:
    for name, value in plan.changes.items():
        setattr(record, name, value)


def _new_member_values(
    contact: ContactRecord, *, tenant_id: int, source_file: str | None, now: datetime, retention_days: int
) -> dict[str, object]:
    return {
        "tenant_id": tenant_id,
        "first_name": contact.first_name,
        "last_name": contact.last_name,
        "email": contact.email,
        "phone": contact.phone,
        "status": derive_status(contact.email, contact.phone),
        "remaining_days": retention_days,
        "date_added": now,
        "source_file": source_file,
        **match_keys(contact.first_name, contact.last_name, contact.email),
    }


def _log_match(match: MatchResult, tenant_name: str) -> None:
    record_match(match.strategy.value)
    logger.debug(
        "Existing audience member matched",
        extra={"event": "dedup_match_found", "tenant": tenant_name, "matched_by": match.strategy.value},
    )


def reconcile_contacts(
    contacts: Sequence[ContactRecord],
    tenant_id: int,
    source_file: str | None = None,
    *,
    mode: MatchMode | str = MatchMode.APPEND,
    settings: ReconcileSettings | None = None,
    session: Session | None = None,
) -> ReconcileSummary:
    """
    Create, update or skip one audience member per contact.

    Raises ``UnknownTenantError`` before any write when the tenant is missing.
    Row failures are collected as ``"Row {n}: {message}"`` and never abort
    the run.
    """

    session = session or db.session
    settings = settings or current_settings()
    mode = MatchMode(mode)

    tenant = session.get(Tenant, tenant_id)
    if tenant is None:
        raise UnknownTenantError(tenant_id)

    summary = ReconcileSummary(tenant_id=tenant_id, source_file=source_file, mode=mode)
    if not contacts:
        logger.warning(
            "No contacts supplied for reconciliation",
            extra={"event": "dedup_empty_records", "tenant": tenant.name},
        )
        return summary

    logger.info(
        "Reconciliation started",
        extra={"event": "dedup_start", "tenant": tenant.name, "records_found": len(contacts), "mode": mode.value},
    )
    if len(contacts) >= settings.batch_threshold:
        summary.strategy = "batched"
        _reconcile_batched(session, contacts, tenant, summary, settings)
    else:
        _reconcile_sequential(session, contacts, tenant, summary, settings)

    record_reconcile_action("created", summary.created)
    record_reconcile_action("updated", summary.updated)
    record_reconcile_action("skipped", summary.skipped)
    record_reconcile_action("error", len(summary.errors))
    logger.info(
        "Reconciliation complete",
        extra={
            "event": "dedup_complete",
            "tenant": tenant.name,
            "records_found": len(contacts),
            "created": summary.created,
            "updated": summary.updated,
            "skipped": summary.skipped,
            "no_identifier": summary.no_identifier,
            "error_count": len(summary.errors),
            "strategy": summary.strategy,
        },
    )
    return summary


def _reconcile_sequential(
    session: Session,
    contacts: Sequence[ContactRecord],
    tenant: Tenant,
    summary: ReconcileSummary,
    settings: ReconcileSettings,
) -> None:
    tenant_id = tenant.id
    tenant_name = tenant.name
    policy = _resolve_policy(summary.mode, settings)
    created_ids: set[int] = set()

    for row_number, contact in enumerate(contacts, start=1):
        try:
            now = utcnow()
            match = find_match(session, contact, tenant_id, summary.mode, exclude_ids=created_ids)
            if not match.is_match:
                record = IdentityRecord(
                    **_new_member_values(
                        contact,
                        tenant_id=tenant_id,
                        source_file=summary.source_file,
                        now=now,
                        retention_days=settings.retention_days,
                    )
                )
                session.add(record)
                session.commit()
                created_ids.add(record.id)
                outcome = RowOutcome(row_number=row_number, action="created", record_id=record.id)
            else:
                _log_match(match, tenant_name)
                record = match.record
                plan = plan_update(
                    record, contact, policy=policy, now=now, retention_days=settings.retention_days
                )
                if plan.changes:
                    _apply_plan(record, plan)
                    session.commit()
                outcome = RowOutcome(
                    row_number=row_number,
                    action=plan.action,
                    record_id=match.record_id,
                    matched_by=match.strategy,
                    fields_updated=plan.fields_updated,
                )
        except Exception as exc:
            session.rollback()
            summary.errors.append(str(RecordError(row_number, str(exc))))
            continue
        summary.tally(outcome, contact)


def _bulk_insert_statement(session: Session):
    table = IdentityRecord.__table__
    stmt = insert(table)
    if session.get_bind().dialect.insert_executemany_returning:
        stmt = stmt.returning(table.c.id, sort_by_parameter_order=True)
    return stmt


def _reconcile_batched(
    session: Session,
    contacts: Sequence[ContactRecord],
    tenant: Tenant,
    summary: ReconcileSummary,
    settings: ReconcileSettings,
) -> None:
    tenant_id = tenant.id
    tenant_name = tenant.name
    policy = _resolve_policy(summary.mode, settings)
    new_rows: list[tuple[int, ContactRecord]] = []
    update_rows: list[tuple[int, ContactRecord, MatchResult]] = []

    # Phase 1: resolve every match against the persisted snapshot.
    for row_number, contact in enumerate(contacts, start=1):
        try:
            match = find_match(session, contact, tenant_id, summary.mode)
        except Exception as exc:
            session.rollback()
            summary.errors.append(str(RecordError(row_number, str(exc))))
            continue
        if match.is_match:
            _log_match(match, tenant_name)
            update_rows.append((row_number, contact, match))
        else:
            new_rows.append((row_number, contact))

    # Phase 2: one bulk insert for all new members.
    if new_rows:
        now = utcnow()
        values = [
            _new_member_values(
                contact,
                tenant_id=tenant_id,
                source_file=summary.source_file,
                now=now,
                retention_days=settings.retention_days,
            )
            for _, contact in new_rows
        ]
        try:
            result = session.execute(_bulk_insert_statement(session), values)
            inserted_ids = list(result.scalars()) if result.returns_rows else [None] * len(new_rows)
            session.commit()
        except Exception as exc:
            session.rollback()
            logger.warning(
                "Bulk insert failed; retrying rows individually",
                extra={"event": "dedup_bulk_insert_failed", "tenant": tenant_name, "error": str(exc)},
            )
            _insert_individually(session, new_rows, values, summary)
        else:
            for (row_number, contact), record_id in zip(new_rows, inserted_ids):
                summary.tally(RowOutcome(row_number=row_number, action="created", record_id=record_id), contact)

    # Phase 3: updates in bounded transactions.
    chunk_size = max(1, settings.update_chunk_size)
    for chunk_number, start in enumerate(range(0, len(update_rows), chunk_size), start=1):
        chunk = update_rows[start : start + chunk_size]
        now = utcnow()
        try:
            outcomes = []
            for row_number, contact, match in chunk:
                record = match.record
                plan = plan_update(record, contact, policy=policy, now=now, retention_days=settings.retention_days)
                _apply_plan(record, plan)
                outcomes.append(
                    (
                        RowOutcome(
                            row_number=row_number,
                            action=plan.action,
                            record_id=match.record_id,
                            matched_by=match.strategy,
                            fields_updated=plan.fields_updated,
                        ),
                        contact,
                    )
                )
            session.commit()
        except Exception as exc:
            session.rollback()
            logger.warning(
                "Update chunk %s failed; retrying rows individually",
                chunk_number,
                extra={"event": "dedup_batch_update_failed", "tenant": tenant_name, "error": str(exc)},
            )
            _update_individually(session, chunk, policy, settings, summary)
            continue
        for outcome, contact in outcomes:
            summary.tally(outcome, contact)

        logger.debug(
            "Update chunk committed",
            extra={"event": "dedup_batch_matches", "tenant": tenant_name, "chunk": chunk_number, "rows": len(chunk)},
        )

    summary.outcomes.sort(key=lambda outcome: outcome.row_number)


def _insert_individually(
    session: Session,
    new_rows: Sequence[tuple[int, ContactRecord]],
    values: Sequence[dict[str, object]],
    summary: ReconcileSummary,
) -> None:
    for (row_number, contact), row_values in zip(new_rows, values):
        try:
            record = IdentityRecord(**row_values)
            session.add(record)
            session.commit()
        except Exception as exc:
            session.rollback()
            summary.errors.append(str(RecordError(row_number, str(exc))))
            continue
        summary.tally(RowOutcome(row_number=row_number, action="created", record_id=record.id), contact)


def _update_individually(
    session: Session,
    chunk: Sequence[tuple[int, ContactRecord, MatchResult]],
    policy: UpdatePolicy,
    settings: ReconcileSettings,
    summary: ReconcileSummary,
) -> None:
    for row_number, contact, match in chunk:
        try:
            record = session.get(IdentityRecord, match.record_id)
            if record is None:
                raise LookupError(f"audience member {match.record_id} no longer exists")
            plan = plan_update(record, contact, policy=policy, now=utcnow(), retention_days=settings.retention_days)
            _apply_plan(record, plan)
            session.commit()
        except Exception as exc:
            session.rollback()
            summary.errors.append(str(RecordError(row_number, str(exc))))
            continue
        summary.tally(
            RowOutcome(
                row_number=row_number,
                action=plan.action,
                record_id=match.record_id,
                matched_by=match.strategy,
                fields_updated=plan.fields_updated,
            ),
            contact,
        )
