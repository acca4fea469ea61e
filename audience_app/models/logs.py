# audience_app/models/logs.py
"""
Append-only bookkeeping tables for ingestion runs, audience syncs and
purchase-driven removals.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db, utcnow


class RunStatus(str, enum.Enum):
    """Lifecycle states shared by processing and sync logs."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class LogAlreadyFinalizedError(RuntimeError):
    """Raised when a terminal log row is finalized a second time."""


class ProcessingLog(BaseModel):
    """One row per ingestion run of a tenant source file."""

    __tablename__ = "file_processing_log"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    file_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus, name="run_status_enum"),
        nullable=False,
        default=RunStatus.PROCESSING,
        index=True,
    )
    total_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    new_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    updated_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    skipped_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    no_identifier_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    tenant = relationship("Tenant", back_populates="processing_logs")

    def __repr__(self):
        return f"<ProcessingLog {self.id} {self.file_name} {self.status.value}>"

    @property
    def is_finalized(self) -> bool:
        return self.status is not RunStatus.PROCESSING

    def finalize(
        self,
        status: RunStatus,
        *,
        total: int = 0,
        created: int = 0,
        updated: int = 0,
        skipped: int = 0,
        no_identifier: int = 0,
        error_message: str | None = None,
    ) -> None:
        if self.is_finalized:
            raise LogAlreadyFinalizedError(f"Processing log {self.id} is already {self.status.value}.")
        if status is RunStatus.PROCESSING:
            raise ValueError("A processing log must be finalized with a terminal status.")
        self.status = status
        self.total_records = total
        self.new_records = created
        self.updated_records = updated
        self.skipped_records = skipped
        self.no_identifier_records = no_identifier
        self.error_message = error_message
        self.finished_at = utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "file_name": self.file_name,
            "status": self.status.value,
            "total_records": self.total_records,
            "new_records": self.new_records,
            "updated_records": self.updated_records,
            "skipped_records": self.skipped_records,
            "no_identifier_records": self.no_identifier_records,
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class SyncLog(BaseModel):
    """One row per add/remove push of records to a remote audience."""

    __tablename__ = "meta_sync_log"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    audience_id: Mapped[str] = mapped_column(db.String(100), nullable=False)
    sync_type: Mapped[str] = mapped_column(db.String(20), nullable=False, default="add")
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus, name="run_status_enum"),
        nullable=False,
        default=RunStatus.PROCESSING,
        index=True,
    )
    total_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    tenant = relationship("Tenant", back_populates="sync_logs")

    def __repr__(self):
        return f"<SyncLog {self.id} {self.sync_type} {self.status.value}>"

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "audience_id": self.audience_id,
            "sync_type": self.sync_type,
            "status": self.status.value,
            "total_records": self.total_records,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "error_message": self.error_message,
        }


class PurchaseRemoval(BaseModel):
    """Audit row for a member deleted because they purchased."""

    __tablename__ = "purchase_removals"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(db.String(32), nullable=True)
    first_name: Mapped[str] = mapped_column(db.String(100), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(db.String(100), nullable=False, default="")
    matched_by: Mapped[str] = mapped_column(db.String(20), nullable=False)
    source_file: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    removed_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<PurchaseRemoval {self.id} tenant={self.tenant_id}>"

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "phone": self.phone,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "matched_by": self.matched_by,
            "source_file": self.source_file,
            "removed_at": self.removed_at.isoformat() if self.removed_at else None,
        }
