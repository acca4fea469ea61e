"""
Hashed, batched audience sync with rate-limit aware retries.

Members are reduced to SHA-256 digests of their normalized email, phone and
names. Rows lacking both email and phone are dropped before batching because
the platform rejects rows without an identifier. Batches go out one at a
time; a rate-limit failure backs off exponentially and retries, anything else
aborts the remainder of the run.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, Literal, Mapping, Protocol, Sequence

from flask import current_app, has_app_context
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from audience_app.errors import SyncFailedError
from audience_app.platform.errors import format_remote_error, is_retryable
from audience_app.platform.meta import AudiencePlatform

from .metrics import record_sync_batch, record_sync_retry

SYNC_SCHEMA: tuple[str, ...] = ("EMAIL", "PHONE", "FN", "LN")
_NON_DIGITS = re.compile(r"\D")

SyncOperation = Literal["add", "remove"]


class SyncableMember(Protocol):
    email: str | None
    phone: str | None
    first_name: str | None
    last_name: str | None


def hash_value(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SyncRecord:
    """Hashed identifiers for one member; a field is ``None`` when the source was blank."""

    email: str | None = None
    phone: str | None = None
    fn: str | None = None
    ln: str | None = None

    @property
    def has_identifier(self) -> bool:
        return bool(self.email or self.phone)

    def as_row(self) -> list[str]:
        return [self.email or "", self.phone or "", self.fn or "", self.ln or ""]

    def as_dict(self) -> dict[str, str]:
        keyed = zip(SYNC_SCHEMA, (self.email, self.phone, self.fn, self.ln))
        return {key: value for key, value in keyed if value}


def to_sync_record(member: SyncableMember) -> SyncRecord:
    email = (member.email or "").strip().lower()
    phone = _NON_DIGITS.sub("", member.phone or "")
    first_name = (member.first_name or "").strip().lower()
    last_name = (member.last_name or "").strip().lower()
    return SyncRecord(
        email=hash_value(email) if email else None,
        phone=hash_value(phone) if phone else None,
        fn=hash_value(first_name) if first_name else None,
        ln=hash_value(last_name) if last_name else None,
    )


def format_sync_records(members: Iterable[SyncableMember]) -> list[SyncRecord]:
    """Hash every member, dropping the ones with neither email nor phone."""

    formatted = (to_sync_record(member) for member in members)
    return [record for record in formatted if record.has_identifier]


def chunk_records(records: Sequence[SyncRecord], chunk_size: int) -> Iterator[Sequence[SyncRecord]]:
    size = max(1, int(chunk_size))
    for start in range(0, len(records), size):
        yield records[start : start + size]


@dataclass(frozen=True)
class SyncSettings:
    batch_size: int = 1000
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "SyncSettings":
        return cls(
            batch_size=int(config.get("SYNC_BATCH_SIZE", 1000)),
            max_attempts=int(config.get("SYNC_MAX_ATTEMPTS", 3)),
            backoff_base_seconds=float(config.get("SYNC_BACKOFF_BASE_SECONDS", 1.0)),
        )


@dataclass(frozen=True)
class SyncSummary:
    """Outcome of a completed sync run."""

    uploaded: int
    total_records: int = 0
    excluded: int = 0
    batches: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "uploaded": self.uploaded,
            "total_records": self.total_records,
            "excluded": self.excluded,
            "batches": self.batches,
        }


class AudienceSyncService:
    """Upload or remove hashed members on a remote audience in sequential batches."""

    def __init__(
        self,
        client: AudiencePlatform,
        *,
        settings: SyncSettings | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        if settings is None:
            settings = SyncSettings.from_config(current_app.config) if has_app_context() else SyncSettings()
        self.client = client
        self.settings = settings
        self.sleep = sleep_fn
        self.logger = logger or logging.getLogger(__name__)

    # Public API -----------------------------------------------------------------

    def sync(self, audience_id: str, members: Iterable[SyncableMember], tenant_label: str) -> SyncSummary:
        """Hash ``members`` and add them to ``audience_id``; raises ``SyncFailedError`` on abort."""

        members = list(members)
        records = format_sync_records(members)
        excluded = len(members) - len(records)
        return self._push("add", audience_id, records, tenant_label, total=len(members), excluded=excluded)

    def remove(self, audience_id: str, members: Iterable[SyncableMember], tenant_label: str) -> SyncSummary:
        """Hash ``members`` and delete them from ``audience_id``."""

        members = list(members)
        records = format_sync_records(members)
        excluded = len(members) - len(records)
        return self._push("remove", audience_id, records, tenant_label, total=len(members), excluded=excluded)

    # Internal helpers -----------------------------------------------------------

    def _push(
        self,
        operation: SyncOperation,
        audience_id: str,
        records: Sequence[SyncRecord],
        tenant_label: str,
        *,
        total: int,
        excluded: int,
    ) -> SyncSummary:
        if not records:
            return SyncSummary(uploaded=0, total_records=total, excluded=excluded)

        event_prefix = "meta_upload" if operation == "add" else "meta_remove"
        self.logger.info(
            "Audience %s started",
            operation,
            extra={"event": f"{event_prefix}_start", "tenant": tenant_label, "records_found": len(records)},
        )

        batches = list(chunk_records(records, self.settings.batch_size))
        sent = 0
        for batch_number, batch in enumerate(batches, start=1):
            self.logger.info(
                "Audience batch started",
                extra={
                    "event": f"{event_prefix}_batch_start",
                    "tenant": tenant_label,
                    "status": f"batch {batch_number}/{len(batches)}",
                    "records_found": len(batch),
                },
            )
            self._send_batch(operation, audience_id, batch, batch_number, tenant_label, sent=sent)
            sent += len(batch)
            self.logger.info(
                "Audience batch complete",
                extra={
                    "event": f"{event_prefix}_batch_complete",
                    "tenant": tenant_label,
                    "status": f"batch {batch_number}/{len(batches)}",
                    "records_found": len(batch),
                },
            )

        self.logger.info(
            "Audience %s complete",
            operation,
            extra={"event": f"{event_prefix}_complete", "tenant": tenant_label, "records_found": sent},
        )
        return SyncSummary(uploaded=sent, total_records=total, excluded=excluded, batches=len(batches))

    def _send_batch(
        self,
        operation: SyncOperation,
        audience_id: str,
        batch: Sequence[SyncRecord],
        batch_number: int,
        tenant_label: str,
        *,
        sent: int,
    ) -> None:
        rows = [record.as_row() for record in batch]
        call = self.client.add_users if operation == "add" else self.client.remove_users
        max_attempts = max(1, self.settings.max_attempts)

        def attempt() -> None:
            started = time.perf_counter()
            try:
                call(audience_id, SYNC_SCHEMA, rows)
            except Exception:
                record_sync_batch(operation=operation, status="failure", duration_seconds=time.perf_counter() - started)
                raise
            record_sync_batch(operation=operation, status="success", duration_seconds=time.perf_counter() - started)

        def before_sleep(retry_state: RetryCallState) -> None:
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            self.logger.warning(
                "Rate limited by remote platform; backing off",
                extra={
                    "event": "meta_upload_retry",
                    "tenant": tenant_label,
                    "status": f"attempt {retry_state.attempt_number}/{max_attempts}",
                    "backoff_seconds": delay,
                },
            )
            record_sync_retry()

        retryer = Retrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=self.settings.backoff_base_seconds),
            retry=retry_if_exception(is_retryable),
            sleep=self.sleep,
            before_sleep=before_sleep,
            reraise=True,
        )
        try:
            retryer(attempt)
        except Exception as exc:
            message = format_remote_error(exc)
            self.logger.error(
                "Audience batch failed",
                extra={
                    "event": "meta_upload_batch_failed",
                    "tenant": tenant_label,
                    "batch": batch_number,
                    "retryable": is_retryable(exc),
                    "error": message,
                },
            )
            raise SyncFailedError(
                uploaded=sent,
                batch_number=batch_number,
                remote_message=message,
                operation="upload" if operation == "add" else "remove",
            ) from exc
