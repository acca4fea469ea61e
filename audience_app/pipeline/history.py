"""Recent processing-log and purchase-removal history for a tenant."""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from audience_app.errors import UnknownTenantError
from audience_app.models import ProcessingLog, PurchaseRemoval, Tenant, db

PROCESSING_HISTORY_LIMIT = 10
REMOVAL_HISTORY_LIMIT = 20
MAX_HISTORY_LIMIT = 100


def clamp_limit(limit: int | None, default: int) -> int:
    if limit is None or limit < 1:
        return default
    return min(limit, MAX_HISTORY_LIMIT)


def _history(session: Session, model, tenant_id: int, order_column, limit: int) -> dict[str, object]:
    tenant = session.get(Tenant, tenant_id)
    if tenant is None:
        raise UnknownTenantError(tenant_id)

    rows = session.scalars(
        select(model).where(model.tenant_id == tenant_id).order_by(order_column.desc(), model.id.desc()).limit(limit)
    ).all()
    total = session.scalar(select(func.count(model.id)).where(model.tenant_id == tenant_id)) or 0
    return {
        "data": [{**row.to_dict(), "tenant_name": tenant.name} for row in rows],
        "pagination": {"limit": limit, "total": int(total)},
    }


def processing_history(tenant_id: int, limit: int | None = None, *, session: Session | None = None):
    """Newest-first ingestion runs for ``tenant_id``."""
    limit = clamp_limit(limit, PROCESSING_HISTORY_LIMIT)
    return _history(session or db.session, ProcessingLog, tenant_id, ProcessingLog.started_at, limit)


def removal_history(tenant_id: int, limit: int | None = None, *, session: Session | None = None):
    """Newest-first purchase removals for ``tenant_id``."""
    limit = clamp_limit(limit, REMOVAL_HISTORY_LIMIT)
    return _history(session or db.session, PurchaseRemoval, tenant_id, PurchaseRemoval.removed_at, limit)
