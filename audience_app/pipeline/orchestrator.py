"""
Daily pipeline run.

One tick ages every member, deletes the expired ones, then walks the active
tenants in id order: fetch the newest source file, ingest it, and push the
tenant's eligible members to its remote audience. A tenant's failure is
recorded against that tenant and never stops the others. Failures of the
retention step itself abort the tick.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Literal

from sqlalchemy.orm import Session

from audience_app.models import Tenant, db
from audience_app.sources import SourceFileFetcher, fetch_for_tenant
from audience_app.vault import CredentialVault

from .ingestion import ingest_contact_file, sync_tenant_audience
from .lifecycle import decrement_all, expire_all
from .matching import MatchMode
from .metrics import record_daily_run_success
from .sync import AudienceSyncService

logger = logging.getLogger(__name__)

TenantStatus = Literal["success", "partial", "failed"]


@dataclass
class TenantOutcome:
    tenant_id: int
    tenant_name: str
    file_name: str | None = None
    records_added: int = 0
    records_synced: int = 0
    status: TenantStatus = "success"
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "tenant_id": self.tenant_id,
            "tenant_name": self.tenant_name,
            "file_name": self.file_name,
            "records_added": self.records_added,
            "records_synced": self.records_synced,
            "status": self.status,
            "errors": list(self.errors),
        }


@dataclass
class DailyRunSummary:
    run_date: date
    decremented: int = 0
    expired: int = 0
    tenants_processed: int = 0
    outcomes: list[TenantOutcome] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def total_added(self) -> int:
        return sum(outcome.records_added for outcome in self.outcomes)

    @property
    def total_synced(self) -> int:
        return sum(outcome.records_synced for outcome in self.outcomes)

    @property
    def succeeded(self) -> bool:
        return not self.errors

    def as_dict(self) -> dict[str, object]:
        return {
            "date": self.run_date.isoformat(),
            "decremented": self.decremented,
            "expired": self.expired,
            "tenants_processed": self.tenants_processed,
            "total_added": self.total_added,
            "total_synced": self.total_synced,
            "tenants": [outcome.as_dict() for outcome in self.outcomes],
            "errors": list(self.errors),
            "duration_seconds": round(self.duration_seconds, 3),
        }


class DailyPipeline:
    """Runs one retention + ingest + sync tick across every active tenant."""

    def __init__(
        self,
        fetcher: SourceFileFetcher,
        *,
        sync_service: AudienceSyncService | None = None,
        vault: CredentialVault | None = None,
        mode: MatchMode | str = MatchMode.APPEND,
        session: Session | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.sync_service = sync_service
        self.vault = vault
        self.mode = MatchMode(mode)
        self.session = session or db.session
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def run(self) -> DailyRunSummary:
        started = time.perf_counter()
        summary = DailyRunSummary(run_date=self.clock().date())
        logger.info("Daily run started", extra={"event": "cron_start"})

        # Ageing must complete before anything is synced.
        summary.decremented = decrement_all(self.session)
        summary.expired = expire_all(self.session)

        tenants = Tenant.active_tenants()
        logger.info(
            "Active tenants loaded",
            extra={"event": "cron_clients_loaded", "records_found": len(tenants)},
        )
        for tenant in tenants:
            outcome = self.process_tenant(tenant)
            summary.outcomes.append(outcome)
            summary.errors.extend(outcome.errors)
            summary.tenants_processed += 1

        summary.duration_seconds = time.perf_counter() - started
        if summary.succeeded:
            record_daily_run_success(time.time())
        logger.info(
            "Daily run complete",
            extra={
                "event": "cron_complete",
                "tenants_processed": summary.tenants_processed,
                "total_added": summary.total_added,
                "total_synced": summary.total_synced,
                "error_count": len(summary.errors),
                "duration_seconds": round(summary.duration_seconds, 3),
            },
        )
        return summary

    def process_tenant(self, tenant: Tenant) -> TenantOutcome:
        tenant_id, tenant_name = tenant.id, tenant.name
        outcome = TenantOutcome(tenant_id=tenant_id, tenant_name=tenant_name)
        logger.info("Processing tenant", extra={"event": "cron_client_start", "tenant": tenant_name})

        try:
            source = fetch_for_tenant(tenant, self.fetcher, self.vault)
            outcome.file_name = source.filename
            result = ingest_contact_file(
                tenant_id, source.filename, source.content, mode=self.mode, session=self.session
            )
        except Exception as exc:
            self.session.rollback()
            outcome.errors.append(f"{tenant_name} fetch/ingest: {exc}")
            outcome.status = "failed"
            logger.error(
                "Tenant ingestion failed",
                extra={"event": "cron_client_ingest_failed", "tenant": tenant_name, "error": str(exc)},
            )
            return outcome

        outcome.records_added = result.summary.created
        outcome.errors.extend(f"{tenant_name} {error}" for error in result.summary.errors)

        if self.sync_service is not None and tenant.has_audience:
            try:
                synced = sync_tenant_audience(tenant_id, self.sync_service, session=self.session)
                outcome.records_synced = synced.uploaded
            except Exception as exc:
                self.session.rollback()
                outcome.errors.append(f"{tenant_name} sync: {exc}")
                logger.error(
                    "Tenant sync failed",
                    extra={"event": "cron_client_sync_failed", "tenant": tenant_name, "error": str(exc)},
                )
        elif tenant.has_audience:
            logger.warning(
                "Remote sync not configured; skipping",
                extra={"event": "cron_client_sync_skipped", "tenant": tenant_name},
            )

        if outcome.errors:
            outcome.status = "partial"
        logger.info(
            "Tenant processed",
            extra={
                "event": "cron_client_complete",
                "tenant": tenant_name,
                "records_added": outcome.records_added,
                "records_synced": outcome.records_synced,
                "status": outcome.status,
            },
        )
        return outcome


def run_daily_pipeline(
    fetcher: SourceFileFetcher,
    *,
    sync_service: AudienceSyncService | None = None,
    vault: CredentialVault | None = None,
    mode: MatchMode | str = MatchMode.APPEND,
    session: Session | None = None,
) -> DailyRunSummary:
    return DailyPipeline(fetcher, sync_service=sync_service, vault=vault, mode=mode, session=session).run()
