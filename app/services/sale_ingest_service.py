from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import FulfillmentOrder, FulfillmentStatus, FulfillmentSupplier
from app.services.audit_service import log_fulfillment_event
from app.services.errors import FulfillmentError
from app.services.fulfillment_meta import FulfillmentMeta, RoutingInfo
from app.services.fulfillment_router import (
    REASON_INCOMPLETE_PRIMARY,
    RoutingDecision,
    SaleLineItem,
    load_variant_mappings,
    route_sale_line_items,
)
from app.services.fulfillment_store import find_by_sale_line
from app.services.submission_service import submit_primary_order
from app.services.supplier_provider import PrimarySupplier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShippingSnapshot:
    name: str | None = None
    address1: str | None = None
    address2: str | None = None
    city: str | None = None
    province: str | None = None
    country: str | None = None
    zip: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class PaidSale:
    sale_id: str
    line_items: list[SaleLineItem]
    shipping: ShippingSnapshot


@dataclass
class IngestResult:
    sale_id: str
    created: list[int] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    submitted: list[int] = field(default_factory=list)
    queued_for_retry: list[int] = field(default_factory=list)
    decisions: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'sale_id': self.sale_id,
            'created': self.created,
            'duplicates': self.duplicates,
            'submitted': self.submitted,
            'queued_for_retry': self.queued_for_retry,
            'decisions': self.decisions,
        }


def _decimal(value, *, field_name: str) -> Decimal:
    if value is None or value == '':
        return Decimal('0')
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f'Invalid {field_name}: {value!r}') from exc


def _text(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_paid_sale(payload: dict) -> PaidSale:
    """Translate a storefront ``orders/paid`` payload into a sale snapshot. Raises ValueError."""
    if not isinstance(payload, dict):
        raise ValueError('Sale payload must be a JSON object')
    sale_id = _text(payload.get('id'))
    if not sale_id:
        raise ValueError('Sale payload is missing id')

    raw_items = payload.get('line_items') or []
    if not isinstance(raw_items, list) or not raw_items:
        raise ValueError('Sale payload has no line items')

    line_items: list[SaleLineItem] = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            raise ValueError('Line item must be a JSON object')
        line_item_id = _text(raw.get('id'))
        if not line_item_id:
            raise ValueError('Line item is missing id')
        try:
            quantity = int(raw.get('quantity') or 1)
        except (TypeError, ValueError) as exc:
            raise ValueError(f'Invalid quantity for line item {line_item_id}') from exc
        if quantity <= 0:
            raise ValueError(f'Quantity must be positive for line item {line_item_id}')
        line_items.append(
            SaleLineItem(
                line_item_id=line_item_id,
                sku=_text(raw.get('sku')),
                quantity=quantity,
                unit_price=_decimal(raw.get('price'), field_name='price'),
                discount=_decimal(raw.get('total_discount'), field_name='total_discount'),
            )
        )

    address = payload.get('shipping_address') or {}
    if not isinstance(address, dict):
        address = {}
    name = _text(address.get('name'))
    if not name:
        name = _text(' '.join(filter(None, [_text(address.get('first_name')), _text(address.get('last_name'))])))
    shipping = ShippingSnapshot(
        name=name,
        address1=_text(address.get('address1')),
        address2=_text(address.get('address2')),
        city=_text(address.get('city')),
        province=_text(address.get('province_code')) or _text(address.get('province')),
        country=_text(address.get('country_code')) or _text(address.get('country')),
        zip=_text(address.get('zip')),
        phone=_text(address.get('phone')) or _text(payload.get('phone')),
    )
    return PaidSale(sale_id=sale_id, line_items=line_items, shipping=shipping)


def _initial_meta(decision: RoutingDecision) -> FulfillmentMeta:
    meta = FulfillmentMeta(routing=RoutingInfo(mode=decision.mode, reason=decision.reason))
    if decision.supplier == FulfillmentSupplier.FALLBACK:
        # Routed straight to fallback; never eligible for primary submission.
        from_supplier = FulfillmentSupplier.PRIMARY.value if decision.reason == REASON_INCOMPLETE_PRIMARY else None
        meta = meta.with_fallback(
            from_supplier=from_supplier,
            reason=decision.reason or 'routed to fallback',
            at=datetime.now(tz=timezone.utc),
        )
    return meta


def _create_record(db: Session, sale: PaidSale, item: SaleLineItem, decision: RoutingDecision) -> FulfillmentOrder:
    shipping = sale.shipping
    order = FulfillmentOrder(
        sale_id=sale.sale_id,
        line_item_id=item.line_item_id,
        sku=item.sku,
        quantity=item.quantity,
        shipping_name=shipping.name,
        shipping_address1=shipping.address1,
        shipping_address2=shipping.address2,
        shipping_city=shipping.city,
        shipping_province=shipping.province,
        shipping_country=shipping.country,
        shipping_zip=shipping.zip,
        shipping_phone=shipping.phone,
        supplier=decision.supplier,
        status=FulfillmentStatus.PENDING,
        sale_price=item.sale_price,
        meta=_initial_meta(decision).to_dict(),
    )
    db.add(order)
    db.flush()
    log_fulfillment_event(
        db,
        fulfillment_order_id=order.id,
        action='CREATED',
        performed_by='webhook',
        new_status=FulfillmentStatus.PENDING,
        reason=decision.reason,
        metadata={'supplier': decision.supplier.value, 'mode': decision.mode, 'retryable': decision.retryable},
    )
    return order


def ingest_paid_sale(db: Session, sale: PaidSale, *, supplier: PrimarySupplier) -> IngestResult:
    """Persist one record per new line item, then try auto-routed items inline.

    Submission failures are left on the record for the retry worker and never
    bubble up to the caller.
    """
    result = IngestResult(sale_id=sale.sale_id)
    mappings = load_variant_mappings(db, (item.sku for item in sale.line_items))
    decisions = route_sale_line_items(sale.line_items, mappings)

    auto_ids: list[int] = []
    for item, decision in zip(sale.line_items, decisions):
        result.decisions.append(
            {
                'line_item_id': decision.line_item_id,
                'supplier': decision.supplier.value,
                'mode': decision.mode,
                'retryable': decision.retryable,
                'reason': decision.reason,
            }
        )
        if find_by_sale_line(db, sale_id=sale.sale_id, line_item_id=item.line_item_id):
            result.duplicates.append(item.line_item_id)
            continue
        try:
            order = _create_record(db, sale, item, decision)
            db.commit()
        except IntegrityError:
            db.rollback()
            # A concurrent delivery of the same webhook won the insert.
            result.duplicates.append(item.line_item_id)
            continue
        result.created.append(order.id)
        if decision.is_auto:
            auto_ids.append(order.id)

    for order_id in auto_ids:
        try:
            order = submit_primary_order(db, order_id, supplier=supplier, performed_by='webhook')
        except FulfillmentError as exc:
            logger.warning(f'Inline submission for fulfillment {order_id} deferred to retry worker: {exc.kind}: {exc.message}')
            result.queued_for_retry.append(order_id)
            continue
        except Exception:
            # The records are committed; a stray supplier error must not fail the webhook.
            db.rollback()
            logger.exception(f'Inline submission for fulfillment {order_id} crashed; deferred to retry worker')
            result.queued_for_retry.append(order_id)
            continue
        if order.status == FulfillmentStatus.ORDERED:
            result.submitted.append(order_id)
        else:
            result.queued_for_retry.append(order_id)

    logger.info(
        f'Ingested sale {sale.sale_id}: created={len(result.created)} duplicates={len(result.duplicates)} '
        f'submitted={len(result.submitted)} queued={len(result.queued_for_retry)}'
    )
    return result
