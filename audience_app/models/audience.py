# audience_app/models/audience.py

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from .base import BaseModel, db, utcnow


class IdentityStatus(str, enum.Enum):
    """Whether a member carries at least one identifier (email or phone)."""

    ACTIVE = "active"
    NO_IDENTIFIER = "no_identifier"


def _present(value: str | None) -> bool:
    return bool(value and value.strip())


def derive_status(email: str | None, phone: str | None) -> IdentityStatus:
    if _present(email) or _present(phone):
        return IdentityStatus.ACTIVE
    return IdentityStatus.NO_IDENTIFIER


def match_key(value: str | None) -> str:
    """Case-folded form stored in the ``*_key`` columns and compared by identity lookups."""
    return (value or "").strip().casefold()


def match_keys(first_name: str | None, last_name: str | None, email: str | None) -> dict[str, str | None]:
    """Key column values for Core inserts, where ORM validators do not run."""
    return {
        "first_name_key": match_key(first_name),
        "last_name_key": match_key(last_name),
        "email_key": match_key(email) or None,
    }


class IdentityRecord(BaseModel):
    """Durable record for one contact of one tenant."""

    __tablename__ = "audience_members"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(db.String(32), nullable=True)
    first_name: Mapped[str] = mapped_column(db.String(100), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(db.String(100), nullable=False, default="")
    status: Mapped[IdentityStatus] = mapped_column(
        Enum(IdentityStatus, name="identity_status_enum"),
        nullable=False,
        default=IdentityStatus.NO_IDENTIFIER,
        index=True,
    )
    remaining_days: Mapped[int] = mapped_column(db.Integer, nullable=False, default=30, index=True)
    date_added: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    source_file: Mapped[str | None] = mapped_column(db.String(255), nullable=True)

    # Case-folded copies of the matchable fields, kept in step by ``_sync_match_key``
    email_key: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    first_name_key: Mapped[str] = mapped_column(db.String(100), nullable=False, default="")
    last_name_key: Mapped[str] = mapped_column(db.String(100), nullable=False, default="")

    tenant = relationship("Tenant", back_populates="members")

    __table_args__ = (
        Index("idx_member_tenant_email", "tenant_id", "email_key"),
        Index("idx_member_tenant_phone", "tenant_id", "phone"),
        Index("idx_member_tenant_name", "tenant_id", "last_name_key", "first_name_key"),
    )

    def __repr__(self):
        return f"<IdentityRecord {self.id} tenant={self.tenant_id} status={self.status.value}>"

    @validates("email", "first_name", "last_name")
    def _sync_match_key(self, key, value):
        folded = match_key(value)
        if key == "email":
            folded = folded or None
        setattr(self, f"{key}_key", folded)
        return value

    @property
    def has_identifier(self) -> bool:
        return _present(self.email) or _present(self.phone)

    def refresh_status(self) -> None:
        self.status = derive_status(self.email, self.phone)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "phone": self.phone,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "status": self.status.value if self.status else None,
            "remaining_days": self.remaining_days,
            "date_added": self.date_added.isoformat() if self.date_added else None,
            "source_file": self.source_file,
        }
