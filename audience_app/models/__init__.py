# audience_app/models/__init__.py
"""
Database models package
"""

from .audience import IdentityRecord, IdentityStatus, derive_status, match_key, match_keys
from .base import BaseModel, db
from .logs import LogAlreadyFinalizedError, ProcessingLog, PurchaseRemoval, RunStatus, SyncLog
from .tenant import Tenant

__all__ = [
    "db",
    "BaseModel",
    "Tenant",
    "IdentityRecord",
    "IdentityStatus",
    "derive_status",
    "match_key",
    "match_keys",
    "ProcessingLog",
    "SyncLog",
    "PurchaseRemoval",
    "RunStatus",
    "LogAlreadyFinalizedError",
]
