from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.models import FulfillmentAuditLog, FulfillmentOrder, FulfillmentStatus, FulfillmentSupplier
from app.services.audit_service import list_fulfillment_events
from app.services.errors import (
    AlreadyEscalated,
    AlreadySubmitted,
    InvalidTransition,
    MissingSupplierMapping,
    NegativeProfitBlocked,
)
from app.services.fulfillment_meta import read_meta, write_meta
from app.services.fulfillment_store import (
    apply_status,
    as_utc,
    hold_fulfillment_lock,
    is_locked,
    load_fulfillment_order,
    new_lock_owner,
)
from app.services.state_machine import ESCALATABLE_STATUSES, is_terminal
from app.services.submission_service import attempt_primary_submission
from app.services.supplier_provider import PrimarySupplier

logger = logging.getLogger(__name__)

ADMIN = 'admin'


def _money(value) -> str | None:
    return None if value is None else str(value)


def _timestamp(value) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def can_retry(order: FulfillmentOrder) -> bool:
    meta = read_meta(order)
    return (
        order.supplier == FulfillmentSupplier.PRIMARY
        and order.status in ESCALATABLE_STATUSES
        and order.supplier_order_id is None
        and not meta.is_escalated
        and not meta.is_profit_blocked
        and not is_locked(order)
    )


def serialize_fulfillment(order: FulfillmentOrder) -> dict:
    """Record view with the derived fields computed from metadata on every read."""
    meta = read_meta(order)
    return {
        'id': order.id,
        'sale_id': order.sale_id,
        'line_item_id': order.line_item_id,
        'sku': order.sku,
        'quantity': order.quantity,
        'supplier': order.supplier.value,
        'status': order.status.value,
        'supplier_order_id': order.supplier_order_id,
        'tracking_number': order.tracking_number,
        'carrier': order.carrier,
        'tracking_url': order.tracking_url,
        'sale_price': _money(order.sale_price),
        'supplier_cost': _money(order.supplier_cost),
        'shipping_cost': _money(order.shipping_cost),
        'profit': _money(order.profit),
        'storefront_fulfillment_sent': bool(order.storefront_fulfillment_sent),
        'storefront_fulfillment_id': order.storefront_fulfillment_id,
        'shipping': {
            'name': order.shipping_name,
            'address1': order.shipping_address1,
            'address2': order.shipping_address2,
            'city': order.shipping_city,
            'province': order.shipping_province,
            'country': order.shipping_country,
            'zip': order.shipping_zip,
            'phone': order.shipping_phone,
        },
        'metadata': meta.to_dict(),
        'retry_count': meta.retry.count,
        'last_error': meta.retry.last_error,
        'is_fallback': meta.is_escalated,
        'can_retry': can_retry(order),
        'is_locked': is_locked(order),
        'blocked_reason': meta.block.reason.value if meta.block else None,
        'created_at': _timestamp(order.created_at),
        'updated_at': _timestamp(order.updated_at),
    }


def serialize_audit_event(event: FulfillmentAuditLog) -> dict:
    return {
        'id': event.id,
        'action': event.action,
        'previous_status': event.previous_status,
        'new_status': event.new_status,
        'performed_by': event.performed_by,
        'reason': event.reason,
        'metadata': event.meta or {},
        'created_at': _timestamp(event.created_at),
    }


def get_fulfillment_audit(db: Session, order_id: int) -> list[FulfillmentAuditLog]:
    load_fulfillment_order(db, order_id)
    return list_fulfillment_events(db, fulfillment_order_id=order_id)


def _quoted_cost(order: FulfillmentOrder):
    return (order.supplier_cost or 0) + (order.shipping_cost or 0)


def _guard_manual_retry(order: FulfillmentOrder) -> None:
    if is_terminal(order.status):
        raise InvalidTransition(order.status.value, FulfillmentStatus.ORDERED.value, order_id=order.id)
    if order.supplier_order_id is not None:
        raise AlreadySubmitted(order.id, order.supplier_order_id)
    meta = read_meta(order)
    if order.supplier == FulfillmentSupplier.FALLBACK or meta.is_escalated:
        raise AlreadyEscalated(order.id)
    if order.supplier == FulfillmentSupplier.MANUAL:
        raise MissingSupplierMapping(order.id, order.sku)
    if meta.is_profit_blocked:
        raise NegativeProfitBlocked(order.id, sale_price=order.sale_price, total_cost=_quoted_cost(order))


def retry_fulfillment(db: Session, order_id: int, *, supplier: PrimarySupplier) -> FulfillmentOrder:
    """Admin-triggered primary submission. Guard violations raise instead of no-oping."""
    with hold_fulfillment_lock(db, order_id, owner=new_lock_owner(ADMIN)):
        order = load_fulfillment_order(db, order_id)
        _guard_manual_retry(order)
        attempt_primary_submission(db, order_id, supplier=supplier, performed_by=ADMIN)
    logger.info(f'Manual retry of fulfillment {order_id} completed')
    return load_fulfillment_order(db, order_id)


def approve_fulfillment(
    db: Session,
    order_id: int,
    *,
    supplier_order_id: str | None = None,
    note: str | None = None,
) -> FulfillmentOrder:
    """Mark a pending/failed record as ordered after the admin placed it by hand.

    A negative-profit block is never lifted here; such records only leave
    ``failed`` through fallback escalation or an administrative close. Approval
    clears a cost-unknown block.
    """
    with hold_fulfillment_lock(db, order_id, owner=new_lock_owner(ADMIN)):
        order = load_fulfillment_order(db, order_id)
        meta = read_meta(order)
        if meta.is_profit_blocked and not meta.is_escalated:
            raise NegativeProfitBlocked(order.id, sale_price=order.sale_price, total_cost=_quoted_cost(order))
        apply_status(
            db,
            order,
            FulfillmentStatus.ORDERED,
            action='ADMIN_APPROVED',
            performed_by=ADMIN,
            reason=note,
            metadata={'supplier_order_id': supplier_order_id} if supplier_order_id else None,
        )
        if supplier_order_id and order.supplier_order_id is None:
            order.supplier_order_id = supplier_order_id
        if meta.is_cost_unknown:
            write_meta(order, meta.without_block())
        db.commit()
    return load_fulfillment_order(db, order_id)


def mark_fulfillment_delivered(db: Session, order_id: int, *, note: str | None = None) -> FulfillmentOrder:
    with hold_fulfillment_lock(db, order_id, owner=new_lock_owner(ADMIN)):
        order = load_fulfillment_order(db, order_id)
        apply_status(
            db,
            order,
            FulfillmentStatus.DELIVERED,
            action='ADMIN_DELIVERED',
            performed_by=ADMIN,
            reason=note,
        )
        db.commit()
    return load_fulfillment_order(db, order_id)


def _close_fulfillment(db: Session, order_id: int, status: FulfillmentStatus, *, action: str, reason: str | None):
    with hold_fulfillment_lock(db, order_id, owner=new_lock_owner(ADMIN)):
        order = load_fulfillment_order(db, order_id)
        apply_status(db, order, status, action=action, performed_by=ADMIN, reason=reason, administrative=True)
        db.commit()
    logger.info(f'Fulfillment {order_id} closed as {status.value} by admin')
    return load_fulfillment_order(db, order_id)


def cancel_fulfillment(db: Session, order_id: int, *, reason: str | None = None) -> FulfillmentOrder:
    return _close_fulfillment(db, order_id, FulfillmentStatus.CANCELLED, action='ADMIN_CANCELLED', reason=reason)


def return_fulfillment(db: Session, order_id: int, *, reason: str | None = None) -> FulfillmentOrder:
    return _close_fulfillment(db, order_id, FulfillmentStatus.RETURNED, action='ADMIN_RETURNED', reason=reason)
