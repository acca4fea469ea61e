"""Prometheus metrics helpers for the audience pipeline."""

from __future__ import annotations

from typing import Literal

from flask import current_app, has_app_context
from prometheus_client import Counter, Gauge, Histogram

_rows_parsed_counter = Counter(
    "audience_rows_parsed_total",
    "Contact rows read from source files by outcome.",
    ["outcome"],
)
_reconcile_outcome_counter = Counter(
    "audience_reconcile_rows_total",
    "Reconciliation decisions by action.",
    ["action"],
)
_match_strategy_counter = Counter(
    "audience_match_strategy_total",
    "Identity matches by the strategy that fired.",
    ["strategy"],
)
_retention_counter = Counter(
    "audience_retention_records_total",
    "Records touched by the retention tick.",
    ["operation"],
)
_sync_batch_counter = Counter(
    "audience_sync_batches_total",
    "Audience upload batches by status.",
    ["operation", "status"],
)
_sync_retry_counter = Counter(
    "audience_sync_retries_total",
    "Audience upload attempts retried after a rate-limit signal.",
)
_sync_batch_duration = Histogram(
    "audience_sync_batch_duration_seconds",
    "Duration of one audience upload batch in seconds.",
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60),
)
_last_daily_run_gauge = Gauge(
    "audience_daily_run_last_success_timestamp",
    "Unix timestamp of the last daily pipeline run without tenant failures.",
)


def _enabled() -> bool:
    if not has_app_context():
        return True
    return bool(current_app.config.get("METRICS_ENABLED", True))


def record_rows_parsed(*, parsed: int, skipped: int, invalid_emails: int, invalid_phones: int = 0) -> None:
    """Count normalizer outcomes for one parsed file."""

    if not _enabled():
        return
    _rows_parsed_counter.labels(outcome="parsed").inc(parsed)
    _rows_parsed_counter.labels(outcome="skipped").inc(skipped)
    _rows_parsed_counter.labels(outcome="invalid_email").inc(invalid_emails)
    _rows_parsed_counter.labels(outcome="invalid_phone").inc(invalid_phones)


def record_reconcile_action(action: Literal["created", "updated", "skipped", "error"], count: int = 1) -> None:
    if not _enabled() or count <= 0:
        return
    _reconcile_outcome_counter.labels(action=action).inc(count)


def record_match(strategy: str) -> None:
    if not _enabled():
        return
    _match_strategy_counter.labels(strategy=strategy).inc()


def record_retention(operation: Literal["decremented", "expired"], count: int) -> None:
    if not _enabled() or count <= 0:
        return
    _retention_counter.labels(operation=operation).inc(count)


def record_sync_batch(
    *,
    operation: Literal["add", "remove"],
    status: Literal["success", "failure"],
    duration_seconds: float,
) -> None:
    """Capture metrics for one audience upload batch."""

    if not _enabled():
        return
    _sync_batch_counter.labels(operation=operation, status=status).inc()
    _sync_batch_duration.observe(duration_seconds)


def record_sync_retry() -> None:
    if not _enabled():
        return
    _sync_retry_counter.inc()


def record_daily_run_success(timestamp: float) -> None:
    if not _enabled():
        return
    _last_daily_run_gauge.set(timestamp)
