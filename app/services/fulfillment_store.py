from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from app.config import settings
from app.models import FulfillmentOrder, FulfillmentStatus, FulfillmentSupplier
from app.services.audit_service import log_fulfillment_event
from app.services.errors import LockHeld, NotFound
from app.services.fulfillment_meta import read_meta
from app.services.state_machine import ESCALATABLE_STATUSES, assert_transition, is_terminal

REALIZED_STATUSES = (FulfillmentStatus.ORDERED, FulfillmentStatus.SHIPPED, FulfillmentStatus.DELIVERED)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_lock_owner(worker: str) -> str:
    return f'{worker}:{uuid.uuid4().hex[:12]}'


def load_fulfillment_order(db: Session, order_id: int) -> FulfillmentOrder:
    order = db.get(FulfillmentOrder, order_id, populate_existing=True)
    if not order:
        raise NotFound(f'Fulfillment order {order_id} not found', order_id=order_id)
    return order


def find_by_sale_line(db: Session, *, sale_id: str, line_item_id: str) -> FulfillmentOrder | None:
    return db.execute(
        select(FulfillmentOrder).where(
            FulfillmentOrder.sale_id == sale_id,
            FulfillmentOrder.line_item_id == line_item_id,
        )
    ).scalar_one_or_none()


def acquire_lock(db: Session, order_id: int, *, owner: str, ttl_seconds: int | None = None) -> bool:
    """Claim the record with a single conditional update; expired locks are free."""
    now = _now()
    ttl = ttl_seconds if ttl_seconds is not None else settings.lock_ttl_seconds
    result = db.execute(
        update(FulfillmentOrder)
        .where(
            FulfillmentOrder.id == order_id,
            or_(FulfillmentOrder.locked_until.is_(None), FulfillmentOrder.locked_until <= now),
        )
        .values(locked_until=now + timedelta(seconds=ttl), lock_owner=owner)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def release_lock(db: Session, order_id: int, *, owner: str) -> None:
    db.execute(
        update(FulfillmentOrder)
        .where(FulfillmentOrder.id == order_id, FulfillmentOrder.lock_owner == owner)
        .values(locked_until=None, lock_owner=None)
        .execution_options(synchronize_session=False)
    )


@contextmanager
def hold_fulfillment_lock(db: Session, order_id: int, *, owner: str, ttl_seconds: int | None = None) -> Iterator[None]:
    if not acquire_lock(db, order_id, owner=owner, ttl_seconds=ttl_seconds):
        if db.get(FulfillmentOrder, order_id) is None:
            raise NotFound(f'Fulfillment order {order_id} not found', order_id=order_id)
        raise LockHeld(order_id)
    try:
        yield
    except BaseException:
        db.rollback()
        raise
    finally:
        release_lock(db, order_id, owner=owner)
        db.commit()


def is_locked(order: FulfillmentOrder, *, now: datetime | None = None) -> bool:
    locked_until = as_utc(order.locked_until)
    return locked_until is not None and locked_until > (now or _now())


def apply_status(
    db: Session,
    order: FulfillmentOrder,
    new_status: FulfillmentStatus,
    *,
    action: str,
    performed_by: str,
    reason: str | None = None,
    administrative: bool = False,
    metadata: dict | None = None,
) -> None:
    """Move ``order`` to ``new_status`` through the transition table and audit it.

    Raises InvalidTransition without touching the record when the move is not
    allowed. The caller commits.
    """
    previous = order.status
    assert_transition(previous, new_status, administrative=administrative, order_id=order.id)
    order.status = new_status
    log_fulfillment_event(
        db,
        fulfillment_order_id=order.id,
        action=action,
        performed_by=performed_by,
        previous_status=previous,
        new_status=new_status,
        reason=reason,
        metadata=metadata,
    )


def escalate_to_fallback(db: Session, order_id: int, *, reason: str, performed_by: str = 'system') -> bool:
    """Switch a primary record to the fallback supplier in place, exactly once.

    The update is conditional on the record still being an unsubmitted primary
    record, so concurrent callers cannot both win. Returns True when this call
    performed the escalation.
    """
    order = load_fulfillment_order(db, order_id)
    meta = read_meta(order)
    if (
        order.supplier != FulfillmentSupplier.PRIMARY
        or order.supplier_order_id is not None
        or order.status not in ESCALATABLE_STATUSES
        or meta.is_escalated
    ):
        return False

    previous_status = order.status
    escalated_meta = meta.with_fallback(
        from_supplier=FulfillmentSupplier.PRIMARY.value,
        reason=reason,
        at=_now(),
    )
    result = db.execute(
        update(FulfillmentOrder)
        .where(
            FulfillmentOrder.id == order_id,
            FulfillmentOrder.supplier == FulfillmentSupplier.PRIMARY,
            FulfillmentOrder.supplier_order_id.is_(None),
            FulfillmentOrder.status.in_(tuple(ESCALATABLE_STATUSES)),
        )
        .values(
            supplier=FulfillmentSupplier.FALLBACK,
            status=FulfillmentStatus.PENDING,
            meta=escalated_meta.to_dict(),
            # Primary costs do not apply to the fallback order; a rejected quote stays in the metadata block.
            supplier_cost=None,
            shipping_cost=None,
            profit=None,
            updated_at=func.now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        return False

    log_fulfillment_event(
        db,
        fulfillment_order_id=order_id,
        action='ESCALATED',
        performed_by=performed_by,
        previous_status=previous_status,
        new_status=FulfillmentStatus.PENDING,
        reason=reason,
        metadata={'from': FulfillmentSupplier.PRIMARY.value, 'to': FulfillmentSupplier.FALLBACK.value},
    )
    db.commit()
    return True


def list_retry_candidate_ids(db: Session, *, limit: int) -> list[int]:
    return db.execute(
        select(FulfillmentOrder.id)
        .where(
            FulfillmentOrder.supplier == FulfillmentSupplier.PRIMARY,
            FulfillmentOrder.status.in_((FulfillmentStatus.PENDING, FulfillmentStatus.FAILED)),
            FulfillmentOrder.supplier_order_id.is_(None),
        )
        .order_by(FulfillmentOrder.created_at.asc(), FulfillmentOrder.id.asc())
        .limit(limit)
    ).scalars().all()


def list_fallback_candidate_ids(db: Session, *, limit: int) -> list[int]:
    rows = db.execute(
        select(FulfillmentOrder)
        .where(
            FulfillmentOrder.supplier == FulfillmentSupplier.FALLBACK,
            FulfillmentOrder.status == FulfillmentStatus.PENDING,
        )
        .order_by(FulfillmentOrder.created_at.asc(), FulfillmentOrder.id.asc())
        .limit(limit)
    ).scalars().all()
    return [row.id for row in rows if read_meta(row).is_escalated]


def list_tracking_discovery_ids(db: Session, *, limit: int) -> list[int]:
    return db.execute(
        select(FulfillmentOrder.id)
        .where(
            FulfillmentOrder.supplier == FulfillmentSupplier.PRIMARY,
            FulfillmentOrder.status == FulfillmentStatus.ORDERED,
            FulfillmentOrder.supplier_order_id.is_not(None),
            FulfillmentOrder.tracking_number.is_(None),
        )
        .order_by(FulfillmentOrder.created_at.asc(), FulfillmentOrder.id.asc())
        .limit(limit)
    ).scalars().all()


def list_tracking_candidate_ids(db: Session, *, limit: int) -> list[int]:
    return db.execute(
        select(FulfillmentOrder.id)
        .where(
            FulfillmentOrder.supplier == FulfillmentSupplier.PRIMARY,
            FulfillmentOrder.tracking_number.is_not(None),
            FulfillmentOrder.status.in_((FulfillmentStatus.ORDERED, FulfillmentStatus.SHIPPED)),
        )
        .order_by(FulfillmentOrder.updated_at.asc(), FulfillmentOrder.id.asc())
        .limit(limit)
    ).scalars().all()


def list_fallback_shipment_ids(db: Session, *, limit: int) -> list[int]:
    return db.execute(
        select(FulfillmentOrder.id)
        .where(
            FulfillmentOrder.supplier == FulfillmentSupplier.FALLBACK,
            FulfillmentOrder.status == FulfillmentStatus.SHIPPED,
        )
        .order_by(FulfillmentOrder.updated_at.asc(), FulfillmentOrder.id.asc())
        .limit(limit)
    ).scalars().all()


def list_fulfillment_orders(
    db: Session,
    *,
    status: FulfillmentStatus | None = None,
    supplier: FulfillmentSupplier | None = None,
    limit: int = 50,
) -> list[FulfillmentOrder]:
    stmt = select(FulfillmentOrder)
    if status is not None:
        stmt = stmt.where(FulfillmentOrder.status == status)
    if supplier is not None:
        stmt = stmt.where(FulfillmentOrder.supplier == supplier)
    return db.execute(
        stmt.order_by(FulfillmentOrder.created_at.desc(), FulfillmentOrder.id.desc()).limit(limit)
    ).scalars().all()


def summarize_fulfillment(db: Session) -> dict:
    by_status = {status.value: 0 for status in FulfillmentStatus}
    by_supplier = {supplier.value: 0 for supplier in FulfillmentSupplier}
    for supplier, status, count in db.execute(
        select(FulfillmentOrder.supplier, FulfillmentOrder.status, func.count(FulfillmentOrder.id)).group_by(
            FulfillmentOrder.supplier, FulfillmentOrder.status
        )
    ).all():
        by_status[status.value] += count
        by_supplier[supplier.value] += count

    realized_profit = db.execute(
        select(func.coalesce(func.sum(FulfillmentOrder.profit), 0)).where(FulfillmentOrder.status.in_(REALIZED_STATUSES))
    ).scalar_one()

    open_records = sum(count for key, count in by_status.items() if not is_terminal(FulfillmentStatus(key)))
    return {
        'total': sum(by_status.values()),
        'open': open_records,
        'by_status': by_status,
        'by_supplier': by_supplier,
        'realized_profit': Decimal(str(realized_profit)).quantize(Decimal('0.01')),
    }
