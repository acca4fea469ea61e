"""
Retention lifecycle for audience members.

Each tick decrements every positive ``remaining_days`` counter by one and then
deletes members whose counter reached zero. Both steps must finish before any
sync runs because sync eligibility is ``remaining_days > 0``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from audience_app.errors import PersistenceError
from audience_app.models import IdentityRecord, db

from .metrics import record_retention

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionTickSummary:
    decremented: int
    expired: int

    def as_dict(self) -> dict[str, int]:
        return {"decremented": self.decremented, "expired": self.expired}


def decrement_all(session: Session | None = None) -> int:
    """Subtract one day from every member with days remaining; returns rows touched."""

    session = session or db.session
    try:
        result = session.execute(
            update(IdentityRecord)
            .where(IdentityRecord.remaining_days > 0)
            .values(remaining_days=IdentityRecord.remaining_days - 1)
            .execution_options(synchronize_session=False)
        )
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(f"Failed to decrement retention counters: {exc}") from exc

    count = result.rowcount or 0
    record_retention("decremented", count)
    logger.info("Retention counters decremented", extra={"event": "cron_days_decremented", "records_found": count})
    return count


def expire_all(session: Session | None = None) -> int:
    """Delete members whose retention ran out; returns rows deleted."""

    session = session or db.session
    try:
        result = session.execute(
            delete(IdentityRecord)
            .where(IdentityRecord.remaining_days <= 0)
            .execution_options(synchronize_session=False)
        )
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(f"Failed to delete expired audience members: {exc}") from exc

    count = result.rowcount or 0
    record_retention("expired", count)
    logger.info("Expired audience members deleted", extra={"event": "cron_expired_deleted", "records_found": count})
    return count


def run_retention_tick(session: Session | None = None) -> RetentionTickSummary:
    """Decrement then expire, in that order."""

    session = session or db.session
    decremented = decrement_all(session)
    expired = expire_all(session)
    return RetentionTickSummary(decremented=decremented, expired=expired)
