from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session, sessionmaker

from app.config import settings
from app.db import SessionLocal
from app.models import FulfillmentOrder, FulfillmentStatus, FulfillmentSupplier
from app.services.audit_service import log_fulfillment_event
from app.services.errors import LockHeld, NotFound, StorefrontCallFailed, SupplierCallFailed
from app.services.fulfillment_meta import read_meta
from app.services.fulfillment_store import (
    apply_status,
    as_utc,
    hold_fulfillment_lock,
    list_fallback_shipment_ids,
    list_tracking_candidate_ids,
    list_tracking_discovery_ids,
    load_fulfillment_order,
    new_lock_owner,
)
from app.services.provider_factory import get_primary_supplier, get_storefront
from app.services.state_machine import can_transition, is_terminal
from app.services.supplier_provider import PrimarySupplier, Storefront, StorefrontFulfillmentRequest

logger = logging.getLogger(__name__)

WORKER_NAME = 'tracking-worker'
DELIVERED_MARKERS = ('delivered', 'signed')


@dataclass
class TrackingTickResult:
    discovered: int = 0
    polled: int = 0
    notified: int = 0
    shipped: int = 0
    delivered: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


def map_shipment_status(status_text: str | None) -> FulfillmentStatus | None:
    text = (status_text or '').strip().lower()
    if not text:
        return None
    if any(marker in text for marker in DELIVERED_MARKERS):
        return FulfillmentStatus.DELIVERED
    return FulfillmentStatus.SHIPPED


def _discover_tracking(db: Session, order_id: int, supplier: PrimarySupplier, result: TrackingTickResult) -> None:
    with hold_fulfillment_lock(db, order_id, owner=new_lock_owner(WORKER_NAME)):
        order = load_fulfillment_order(db, order_id)
        if (
            order.supplier != FulfillmentSupplier.PRIMARY
            or order.status != FulfillmentStatus.ORDERED
            or not order.supplier_order_id
            or order.tracking_number
        ):
            result.skipped += 1
            return
        supplier_order_id = order.supplier_order_id
        db.commit()

        detail = supplier.get_order(supplier_order_id)
        if not detail.tracking_number:
            return

        order = load_fulfillment_order(db, order_id)
        if order.tracking_number or order.status != FulfillmentStatus.ORDERED:
            return
        order.tracking_number = detail.tracking_number
        order.carrier = detail.carrier or settings.primary_carrier
        log_fulfillment_event(
            db,
            fulfillment_order_id=order.id,
            action='TRACKING_ASSIGNED',
            performed_by=WORKER_NAME,
            previous_status=order.status,
            new_status=order.status,
            metadata={'tracking_number': order.tracking_number, 'carrier': order.carrier},
        )
        db.commit()
        result.discovered += 1
        logger.info(f'Fulfillment {order_id} picked up tracking {order.tracking_number}')


def _notify_storefront(db: Session, order: FulfillmentOrder, storefront: Storefront) -> bool:
    """Send the storefront fulfillment once. Returns True when the storefront already has it."""
    if order.storefront_fulfillment_sent:
        return True
    request = StorefrontFulfillmentRequest(
        sale_id=order.sale_id,
        line_item_id=order.line_item_id,
        quantity=order.quantity,
        tracking_number=order.tracking_number,
        tracking_url=order.tracking_url,
        carrier=order.carrier or settings.primary_carrier,
    )
    order_id = order.id
    db.commit()
    try:
        fulfillment_id = storefront.create_fulfillment(request)
    except StorefrontCallFailed as exc:
        logger.warning(f'Storefront notification for fulfillment {order_id} failed, will retry: {exc.message}')
        return False

    order = load_fulfillment_order(db, order_id)
    order.storefront_fulfillment_sent = True
    order.storefront_fulfillment_id = fulfillment_id
    log_fulfillment_event(
        db,
        fulfillment_order_id=order_id,
        action='STOREFRONT_NOTIFIED',
        performed_by=WORKER_NAME,
        previous_status=order.status,
        new_status=order.status,
        metadata={'storefront_fulfillment_id': fulfillment_id, 'tracking_number': order.tracking_number},
    )
    db.commit()
    return True


def _reconcile(
    db: Session,
    order_id: int,
    supplier: PrimarySupplier,
    storefront: Storefront,
    result: TrackingTickResult,
) -> None:
    with hold_fulfillment_lock(db, order_id, owner=new_lock_owner(WORKER_NAME)):
        order = load_fulfillment_order(db, order_id)
        if is_terminal(order.status) or not order.tracking_number:
            result.skipped += 1
            return

        was_notified = order.storefront_fulfillment_sent
        notified = _notify_storefront(db, order, storefront)
        if notified and not was_notified:
            result.notified += 1

        order = load_fulfillment_order(db, order_id)
        tracking_number = order.tracking_number
        db.commit()
        shipment = supplier.get_tracking(tracking_number)
        result.polled += 1

        order = load_fulfillment_order(db, order_id)
        target = map_shipment_status(shipment.status_text)
        if shipment.tracking_url and not order.tracking_url:
            order.tracking_url = shipment.tracking_url
        if shipment.carrier and not order.carrier:
            order.carrier = shipment.carrier

        if target is None or target == order.status or not can_transition(order.status, target):
            db.commit()
            return
        if is_terminal(target) and not notified:
            # The storefront hears about the shipment before the record closes.
            db.commit()
            return

        apply_status(
            db,
            order,
            target,
            action='TRACKING_UPDATED',
            performed_by=WORKER_NAME,
            reason=shipment.status_text,
        )
        db.commit()
        if target == FulfillmentStatus.DELIVERED:
            result.delivered += 1
        else:
            result.shipped += 1
        logger.info(f'Fulfillment {order_id} now {target.value} ({shipment.status_text})')


def _fallback_shipped_at(order: FulfillmentOrder) -> datetime | None:
    fallback = read_meta(order).fallback
    stamp = (fallback.shipped_at or fallback.at) if fallback else None
    if stamp:
        try:
            return as_utc(datetime.fromisoformat(stamp))
        except ValueError:
            logger.warning(f'Fulfillment {order.id} has an unreadable fallback timestamp: {stamp!r}')
    return as_utc(order.created_at)


def _settle_fallback_shipment(
    db: Session,
    order_id: int,
    storefront: Storefront,
    *,
    delivery_days: int,
    now: datetime,
    result: TrackingTickResult,
) -> None:
    """Fallback parcels have no carrier feed: notify once, then close by age without any supplier call."""
    with hold_fulfillment_lock(db, order_id, owner=new_lock_owner(WORKER_NAME)):
        order = load_fulfillment_order(db, order_id)
        if order.supplier != FulfillmentSupplier.FALLBACK or order.status != FulfillmentStatus.SHIPPED:
            result.skipped += 1
            return
        shipped_at = _fallback_shipped_at(order)

        was_notified = order.storefront_fulfillment_sent
        notified = _notify_storefront(db, order, storefront)
        if notified and not was_notified:
            result.notified += 1
        if not notified or shipped_at is None or now - shipped_at < timedelta(days=delivery_days):
            return

        order = load_fulfillment_order(db, order_id)
        apply_status(
            db,
            order,
            FulfillmentStatus.DELIVERED,
            action='FALLBACK_DELIVERED',
            performed_by=WORKER_NAME,
            reason=f'no carrier feed; assumed delivered {delivery_days} days after shipping',
        )
        db.commit()
        result.delivered += 1
        logger.info(f'Fallback fulfillment {order_id} marked delivered (shipped {shipped_at.isoformat()})')


def run_tracking_tick(
    session_factory: sessionmaker = SessionLocal,
    *,
    supplier: PrimarySupplier | None = None,
    storefront: Storefront | None = None,
    batch_size: int | None = None,
    fallback_delivery_days: int | None = None,
) -> TrackingTickResult:
    """Pick up tracking numbers, notify the storefront once and move records to shipped/delivered.

    Primary records follow the supplier's tracking feed. Fallback records are
    never polled; they close once they have been shipped for
    ``fallback_delivery_days``.
    """
    supplier = supplier or get_primary_supplier()
    storefront = storefront or get_storefront()
    batch_size = batch_size or settings.worker_batch_size
    delivery_days = fallback_delivery_days or settings.fallback_delivery_days
    result = TrackingTickResult()

    with session_factory() as db:
        discovery_ids = list_tracking_discovery_ids(db, limit=batch_size)
        db.commit()
        for order_id in discovery_ids:
            try:
                _discover_tracking(db, order_id, supplier, result)
            except (LockHeld, NotFound, SupplierCallFailed) as exc:
                result.skipped += 1
                logger.debug(f'Tracking discovery skipped fulfillment {order_id}: {exc.message}')
            except Exception as exc:
                db.rollback()
                result.errors.append(f'{order_id}: {exc}')
                logger.exception(f'Tracking discovery failed on fulfillment {order_id}')

        candidate_ids = list_tracking_candidate_ids(db, limit=batch_size)
        db.commit()
        logger.info(f'Tracking tick: {len(discovery_ids)} to discover, {len(candidate_ids)} to poll')
        for order_id in candidate_ids:
            try:
                _reconcile(db, order_id, supplier, storefront, result)
            except (LockHeld, NotFound) as exc:
                result.skipped += 1
                logger.debug(f'Tracking tick skipped fulfillment {order_id}: {exc.message}')
            except SupplierCallFailed as exc:
                result.skipped += 1
                logger.warning(f'Tracking poll failed for fulfillment {order_id}: {exc.message}')
            except Exception as exc:
                db.rollback()
                result.errors.append(f'{order_id}: {exc}')
                logger.exception(f'Tracking tick failed on fulfillment {order_id}')

        fallback_ids = list_fallback_shipment_ids(db, limit=batch_size)
        db.commit()
        now = datetime.now(tz=timezone.utc)
        for order_id in fallback_ids:
            try:
                _settle_fallback_shipment(db, order_id, storefront, delivery_days=delivery_days, now=now, result=result)
            except (LockHeld, NotFound) as exc:
                result.skipped += 1
                logger.debug(f'Fallback delivery check skipped fulfillment {order_id}: {exc.message}')
            except Exception as exc:
                db.rollback()
                result.errors.append(f'{order_id}: {exc}')
                logger.exception(f'Fallback delivery check failed on fulfillment {order_id}')

    logger.info(
        f'Tracking tick done: discovered={result.discovered} polled={result.polled} notified={result.notified} '
        f'shipped={result.shipped} delivered={result.delivered} skipped={result.skipped} errors={len(result.errors)}'
    )
    return result
