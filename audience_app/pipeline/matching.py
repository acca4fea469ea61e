"""
Progressive identity matching of contact rows against a tenant's members.

Strategies run in a fixed order and the first hit wins; there is no scoring.
Bulk ingestion (``append``) only accepts identifier+name matches so two people
sharing a household phone are not merged. Interactive merge flows
(``match-append``) fall back to identifier-only matches to avoid duplicates.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable, Collection, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from audience_app.models import IdentityRecord, match_key

from .normalizer import ContactRecord


class MatchMode(str, enum.Enum):
    APPEND = "append"
    MATCH_APPEND = "match-append"


class MatchStrategy(str, enum.Enum):
    EMAIL_NAME = "email+name"
    PHONE_NAME = "phone+name"
    EMAIL = "email"
    PHONE = "phone"
    NONE = "none"


@dataclass(frozen=True)
class MatchResult:
    """
    Outcome of matching one contact.

    Attributes:
        record: The matched member, or ``None`` when the contact is new.
        strategy: Which strategy fired (``MatchStrategy.NONE`` when unmatched).
    """

    record: IdentityRecord | None
    strategy: MatchStrategy

    @property
    def is_match(self) -> bool:
        return self.record is not None

    @property
    def record_id(self) -> int | None:
        return self.record.id if self.record is not None else None


NO_MATCH = MatchResult(record=None, strategy=MatchStrategy.NONE)


def _name_clauses(contact: ContactRecord) -> list:
    return [
        IdentityRecord.first_name_key == match_key(contact.first_name),
        IdentityRecord.last_name_key == match_key(contact.last_name),
    ]


def _email_clause(contact: ContactRecord):
    return IdentityRecord.email_key == match_key(contact.email)


def _phone_clause(contact: ContactRecord):
    return IdentityRecord.phone == contact.phone


_StrategyClauses = Callable[[ContactRecord], list]

_STRATEGIES: dict[MatchStrategy, tuple[Callable[[ContactRecord], bool], _StrategyClauses]] = {
    MatchStrategy.EMAIL_NAME: (
        lambda contact: bool(contact.email),
        lambda contact: [_email_clause(contact), *_name_clauses(contact)],
    ),
    MatchStrategy.PHONE_NAME: (
        lambda contact: bool(contact.phone),
        lambda contact: [_phone_clause(contact), *_name_clauses(contact)],
    ),
    MatchStrategy.EMAIL: (
        lambda contact: bool(contact.email),
        lambda contact: [_email_clause(contact)],
    ),
    MatchStrategy.PHONE: (
        lambda contact: bool(contact.phone),
        lambda contact: [_phone_clause(contact)],
    ),
}

STRATEGY_ORDER: dict[MatchMode, tuple[MatchStrategy, ...]] = {
    MatchMode.APPEND: (MatchStrategy.EMAIL_NAME, MatchStrategy.PHONE_NAME),
    MatchMode.MATCH_APPEND: (
        MatchStrategy.EMAIL_NAME,
        MatchStrategy.PHONE_NAME,
        MatchStrategy.EMAIL,
        MatchStrategy.PHONE,
    ),
}


def strategies_for(mode: MatchMode | str) -> tuple[MatchStrategy, ...]:
    return STRATEGY_ORDER[MatchMode(mode)]


def find_match(
    session: Session,
    contact: ContactRecord,
    tenant_id: int,
    mode: MatchMode | str = MatchMode.APPEND,
    *,
    exclude_ids: Collection[int] = (),
    strategies: Iterable[MatchStrategy] | None = None,
) -> MatchResult:
    """
    Resolve ``contact`` to an existing member of ``tenant_id``.

    Ties inside one strategy resolve to the lowest member id. ``exclude_ids``
    hides members created earlier in the same run so rows of one file are
    never matched against each other.
    """

    ordered = tuple(strategies) if strategies is not None else strategies_for(mode)
    for strategy in ordered:
        applies, clauses = _STRATEGIES[strategy]
        if not applies(contact):
            continue
        stmt = select(IdentityRecord).where(IdentityRecord.tenant_id == tenant_id, *clauses(contact))
        if exclude_ids:
            stmt = stmt.where(IdentityRecord.id.not_in(list(exclude_ids)))
        record = session.scalars(stmt.order_by(IdentityRecord.id).limit(1)).first()
        if record is not None:
            return MatchResult(record=record, strategy=strategy)
    return NO_MATCH
