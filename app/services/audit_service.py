from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import FulfillmentAuditLog, FulfillmentStatus


def _status_value(status: FulfillmentStatus | str | None) -> str | None:
    if status is None:
        return None
    return status.value if isinstance(status, FulfillmentStatus) else str(status)


def log_fulfillment_event(
    db: Session,
    *,
    fulfillment_order_id: int,
    action: str,
    performed_by: str = 'system',
    previous_status: FulfillmentStatus | str | None = None,
    new_status: FulfillmentStatus | str | None = None,
    reason: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        FulfillmentAuditLog(
            fulfillment_order_id=fulfillment_order_id,
            action=action,
            previous_status=_status_value(previous_status),
            new_status=_status_value(new_status),
            performed_by=performed_by,
            reason=reason[:500] if reason else None,
            meta=metadata or {},
        )
    )


def list_fulfillment_events(db: Session, *, fulfillment_order_id: int) -> list[FulfillmentAuditLog]:
    return db.execute(
        select(FulfillmentAuditLog)
        .where(FulfillmentAuditLog.fulfillment_order_id == fulfillment_order_id)
        .order_by(FulfillmentAuditLog.created_at.asc(), FulfillmentAuditLog.id.asc())
    ).scalars().all()
