# audience_app/models/tenant.py

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from .base import BaseModel, db


class Tenant(BaseModel):
    """A client organization whose contact list is reconciled and synced."""

    __tablename__ = "tenants"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, index=True)
    slug = db.Column(db.String(100), unique=True, nullable=False, index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)

    # Remote audience on the advertising platform
    audience_id = db.Column(db.String(100), nullable=True)

    # Source file location and encrypted remote credentials
    source_directory = db.Column(db.String(500), nullable=True)
    file_pattern = db.Column(db.String(100), nullable=False, default="*.csv")
    remote_host = db.Column(db.String(255), nullable=True)
    remote_username = db.Column(db.String(255), nullable=True)
    remote_password_encrypted = db.Column(db.Text, nullable=True)

    members = db.relationship("IdentityRecord", back_populates="tenant", cascade="all, delete-orphan")
    processing_logs = db.relationship("ProcessingLog", back_populates="tenant", cascade="all, delete-orphan")
    sync_logs = db.relationship("SyncLog", back_populates="tenant", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Tenant {self.slug}>"

    @property
    def has_audience(self) -> bool:
        return bool(self.audience_id and self.audience_id.strip())

    @staticmethod
    def find_by_slug(slug):
        """Find tenant by slug with error handling"""
        try:
            return Tenant.query.filter_by(slug=slug).first()
        except SQLAlchemyError as e:
            current_app.logger.error(f"Database error finding tenant by slug {slug}: {str(e)}")
            return None

    @staticmethod
    def active_tenants():
        return Tenant.query.filter_by(is_active=True).order_by(Tenant.id).all()

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "is_active": self.is_active,
            "audience_id": self.audience_id,
            "source_directory": self.source_directory,
            "file_pattern": self.file_pattern,
        }
