"""Audience reconciliation pipeline helpers."""

from __future__ import annotations

from .history import processing_history, removal_history
from .ingestion import IngestionResult, TenantSyncResult, eligible_members, ingest_contact_file, sync_tenant_audience
from .lifecycle import RetentionTickSummary, decrement_all, expire_all, run_retention_tick
from .matching import MatchMode, MatchResult, MatchStrategy, find_match, strategies_for
from .members import EDITABLE_FIELDS, IdentityEdit, no_identifier_stats, update_identity
from .normalizer import (
    ContactCSVAdapter,
    ContactParseStatistics,
    ContactRecord,
    detect_headers,
    normalize_email,
    normalize_phone,
    parse_contacts,
    validate_csv_format,
)
from .orchestrator import DailyPipeline, DailyRunSummary, TenantOutcome, run_daily_pipeline
from .reconcile import ReconcileSettings, ReconcileSummary, RowOutcome, plan_edit, plan_update, reconcile_contacts
from .suppression import SuppressionSummary, suppress_purchasers
from .sync import AudienceSyncService, SyncRecord, SyncSettings, SyncSummary, format_sync_records, hash_value

__all__ = [
    "AudienceSyncService",
    "ContactCSVAdapter",
    "ContactParseStatistics",
    "ContactRecord",
    "DailyPipeline",
    "DailyRunSummary",
    "EDITABLE_FIELDS",
    "IdentityEdit",
    "IngestionResult",
    "MatchMode",
    "MatchResult",
    "MatchStrategy",
    "ReconcileSettings",
    "ReconcileSummary",
    "RetentionTickSummary",
    "RowOutcome",
    "SuppressionSummary",
    "SyncRecord",
    "SyncSettings",
    "SyncSummary",
    "TenantOutcome",
    "TenantSyncResult",
    "decrement_all",
    "detect_headers",
    "eligible_members",
    "expire_all",
    "find_match",
    "format_sync_records",
    "hash_value",
    "no_identifier_stats",
    "ingest_contact_file",
    "normalize_email",
    "normalize_phone",
    "parse_contacts",
    "plan_edit",
    "plan_update",
    "processing_history",
    "reconcile_contacts",
    "removal_history",
    "run_daily_pipeline",
    "run_retention_tick",
    "strategies_for",
    "suppress_purchasers",
    "sync_tenant_audience",
    "update_identity",
    "validate_csv_format",
]
