from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import Session

from app.models import FulfillmentOrder, FulfillmentStatus, FulfillmentSupplier
from app.services.audit_service import log_fulfillment_event
from app.services.errors import (
    AlreadyEscalated,
    FulfillmentError,
    MissingSupplierMapping,
    NegativeProfitBlocked,
    SupplierCallFailed,
    SupplierCostUnknown,
)
from app.services.fulfillment_meta import BlockInfo, BlockReason, read_meta, write_meta
from app.services.fulfillment_router import VariantRef, load_primary_variant_ref
from app.services.fulfillment_store import (
    apply_status,
    hold_fulfillment_lock,
    load_fulfillment_order,
    new_lock_owner,
)
from app.services.state_machine import assert_transition, is_terminal
from app.services.supplier_provider import PrimarySupplier, Recipient, SupplierOrderRequest

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def build_supplier_order_request(order: FulfillmentOrder, variant_ref: VariantRef) -> SupplierOrderRequest:
    return SupplierOrderRequest(
        order_number=f'{order.sale_id}-{order.line_item_id}',
        recipient=Recipient(
            name=order.shipping_name or '',
            address1=order.shipping_address1 or '',
            address2=order.shipping_address2 or '',
            city=order.shipping_city or '',
            province=order.shipping_province or '',
            country=order.shipping_country or '',
            zip=order.shipping_zip or '',
            phone=order.shipping_phone or '',
        ),
        variant_id=variant_ref.variant_id,
        quantity=order.quantity or 1,
    )


def _move_to_failed(
    db: Session,
    order: FulfillmentOrder,
    *,
    action: str,
    reason: str,
    performed_by: str,
    metadata: dict | None = None,
) -> None:
    # A record that is already failed keeps its status; the event is still audited.
    if order.status == FulfillmentStatus.FAILED:
        log_fulfillment_event(
            db,
            fulfillment_order_id=order.id,
            action=action,
            performed_by=performed_by,
            previous_status=order.status,
            new_status=order.status,
            reason=reason,
            metadata=metadata,
        )
    else:
        apply_status(
            db,
            order,
            FulfillmentStatus.FAILED,
            action=action,
            performed_by=performed_by,
            reason=reason,
            metadata=metadata,
        )


def _record_failure(db: Session, order: FulfillmentOrder, error: FulfillmentError, *, performed_by: str) -> None:
    write_meta(order, read_meta(order).with_failure(error.message, _now()))
    _move_to_failed(db, order, action='PRIMARY_FAILED', reason=error.message, performed_by=performed_by)
    db.commit()


def _record_profit_block(
    db: Session,
    order: FulfillmentOrder,
    *,
    product_cost: Decimal,
    shipping_cost: Decimal,
    rejected_supplier_order_id: str,
    error: NegativeProfitBlocked,
    performed_by: str,
) -> None:
    order.supplier_cost = product_cost
    order.shipping_cost = shipping_cost
    order.profit = (order.sale_price - (product_cost + shipping_cost)).quantize(CENT)
    write_meta(
        order,
        read_meta(order).with_block(
            BlockInfo(
                reason=BlockReason.NEGATIVE_PROFIT,
                detail=error.message,
                at=_now().isoformat(),
                rejected_supplier_order_id=rejected_supplier_order_id,
            )
        ),
    )
    _move_to_failed(
        db,
        order,
        action='NEGATIVE_PROFIT_BLOCKED',
        reason=error.message,
        performed_by=performed_by,
        metadata={'rejected_supplier_order_id': rejected_supplier_order_id, 'profit': str(order.profit)},
    )
    db.commit()


def _record_cost_unknown(
    db: Session,
    order: FulfillmentOrder,
    *,
    supplier_order_id: str,
    error: SupplierCostUnknown,
    performed_by: str,
) -> None:
    # The supplier order exists; keeping its id takes the record out of every retry and escalation path.
    order.supplier_order_id = supplier_order_id
    order.supplier_cost = None
    order.shipping_cost = None
    order.profit = None
    write_meta(
        order,
        read_meta(order).with_block(
            BlockInfo(reason=BlockReason.COST_UNKNOWN, detail=error.message, at=_now().isoformat())
        ),
    )
    _move_to_failed(
        db,
        order,
        action='SUPPLIER_COST_UNKNOWN',
        reason=error.message,
        performed_by=performed_by,
        metadata={'supplier_order_id': supplier_order_id},
    )
    db.commit()


def attempt_primary_submission(
    db: Session,
    order_id: int,
    *,
    supplier: PrimarySupplier,
    performed_by: str = 'system',
) -> FulfillmentOrder:
    """Submit one record to the primary supplier. The caller must hold the record lock.

    Returns the record unchanged when it is terminal, not a primary record, or
    already has a supplier order. Raises AlreadyEscalated,
    MissingSupplierMapping, SupplierCallFailed, SupplierCostUnknown or
    NegativeProfitBlocked; every failure is persisted on the record before it
    is raised.
    """
    order = load_fulfillment_order(db, order_id)
    if is_terminal(order.status):
        return order
    if order.supplier != FulfillmentSupplier.PRIMARY:
        return order
    if order.supplier_order_id is not None:
        logger.debug(f'Fulfillment {order.id} already has supplier order {order.supplier_order_id}; skipping')
        return order
    if read_meta(order).is_escalated:
        raise AlreadyEscalated(order.id)
    assert_transition(order.status, FulfillmentStatus.ORDERED, order_id=order.id)

    variant_ref = load_primary_variant_ref(db, order.sku)
    if variant_ref is None:
        error = MissingSupplierMapping(order.id, order.sku)
        _record_failure(db, order, error, performed_by=performed_by)
        raise error

    request = build_supplier_order_request(order, variant_ref)
    db.commit()

    logger.info(f'Submitting fulfillment {order_id} sale={order.sale_id} sku={order.sku} to primary supplier')
    try:
        result = supplier.create_order(request)
    except SupplierCallFailed as exc:
        order = load_fulfillment_order(db, order_id)
        _record_failure(db, order, exc, performed_by=performed_by)
        logger.warning(f'Primary submission failed for fulfillment {order_id}: {exc.message}')
        raise

    order = load_fulfillment_order(db, order_id)
    if order.supplier_order_id is not None:
        logger.warning(
            f'Fulfillment {order_id} gained supplier order {order.supplier_order_id} during submission; '
            f'ignoring {result.supplier_order_id}'
        )
        return order

    if not result.cost_known:
        error = SupplierCostUnknown(order.id, result.supplier_order_id)
        _record_cost_unknown(
            db,
            order,
            supplier_order_id=result.supplier_order_id,
            error=error,
            performed_by=performed_by,
        )
        logger.warning(f'Fulfillment {order_id} held for review: {error.message}')
        raise error

    product_cost = result.product_cost.quantize(CENT)
    shipping_cost = result.shipping_cost.quantize(CENT)
    total_cost = product_cost + shipping_cost
    if total_cost > order.sale_price:
        error = NegativeProfitBlocked(order.id, sale_price=order.sale_price, total_cost=total_cost)
        _record_profit_block(
            db,
            order,
            product_cost=product_cost,
            shipping_cost=shipping_cost,
            rejected_supplier_order_id=result.supplier_order_id,
            error=error,
            performed_by=performed_by,
        )
        logger.warning(f'Fulfillment {order_id} blocked: {error.message}')
        raise error

    order.supplier_order_id = result.supplier_order_id
    order.supplier_cost = product_cost
    order.shipping_cost = shipping_cost
    order.profit = (order.sale_price - total_cost).quantize(CENT)
    write_meta(order, read_meta(order).without_block())
    apply_status(
        db,
        order,
        FulfillmentStatus.ORDERED,
        action='PRIMARY_SUBMITTED',
        performed_by=performed_by,
        metadata={'supplier_order_id': result.supplier_order_id, 'profit': str(order.profit)},
    )
    db.commit()
    logger.info(f'Fulfillment {order_id} ordered with supplier order {result.supplier_order_id} profit={order.profit}')
    return order


def submit_primary_order(
    db: Session,
    order_id: int,
    *,
    supplier: PrimarySupplier,
    performed_by: str = 'system',
) -> FulfillmentOrder:
    """Lock the record, run one submission attempt, release the lock. Raises LockHeld when busy."""
    with hold_fulfillment_lock(db, order_id, owner=new_lock_owner(performed_by)):
        attempt_primary_submission(db, order_id, supplier=supplier, performed_by=performed_by)
    return load_fulfillment_order(db, order_id)
