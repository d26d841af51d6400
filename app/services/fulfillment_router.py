from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import FulfillmentSupplier, SupplierVariantMapping

MODE_AUTO = 'auto'
MODE_MANUAL = 'manual'

REASON_NO_MAPPING = 'no mapping'
REASON_INCOMPLETE_PRIMARY = 'incomplete primary mapping'
REASON_UNKNOWN_SUPPLIER = 'unknown supplier'


@dataclass(frozen=True)
class SaleLineItem:
    line_item_id: str
    sku: str | None
    quantity: int = 1
    unit_price: Decimal = Decimal('0')
    discount: Decimal = Decimal('0')

    @property
    def sale_price(self) -> Decimal:
        total = (self.unit_price * self.quantity) - self.discount
        return max(total, Decimal('0')).quantize(Decimal('0.01'))


@dataclass(frozen=True)
class VariantRef:
    product_id: str
    variant_id: str


class VariantMappingLike(Protocol):
    supplier: str
    supplier_product_id: str | None
    supplier_variant_id: str | None


@dataclass(frozen=True)
class RoutingDecision:
    line_item_id: str
    sku: str | None
    quantity: int
    supplier: FulfillmentSupplier
    mode: str
    retryable: bool
    reason: str | None = None
    variant_ref: VariantRef | None = None

    @property
    def is_auto(self) -> bool:
        return self.mode == MODE_AUTO


def route_line_item(item: SaleLineItem, mapping: VariantMappingLike | None) -> RoutingDecision:
    base = {'line_item_id': item.line_item_id, 'sku': item.sku, 'quantity': item.quantity}

    if mapping is None:
        return RoutingDecision(
            **base,
            supplier=FulfillmentSupplier.MANUAL,
            mode=MODE_MANUAL,
            retryable=False,
            reason=REASON_NO_MAPPING,
        )

    tag = (mapping.supplier or '').strip().lower()
    product_id = (mapping.supplier_product_id or '').strip()
    variant_id = (mapping.supplier_variant_id or '').strip()

    if tag == FulfillmentSupplier.PRIMARY.value:
        if product_id and variant_id:
            return RoutingDecision(
                **base,
                supplier=FulfillmentSupplier.PRIMARY,
                mode=MODE_AUTO,
                retryable=True,
                variant_ref=VariantRef(product_id=product_id, variant_id=variant_id),
            )
        return RoutingDecision(
            **base,
            supplier=FulfillmentSupplier.FALLBACK,
            mode=MODE_MANUAL,
            retryable=True,
            reason=REASON_INCOMPLETE_PRIMARY,
        )

    if tag == FulfillmentSupplier.FALLBACK.value:
        return RoutingDecision(
            **base,
            supplier=FulfillmentSupplier.FALLBACK,
            mode=MODE_MANUAL,
            retryable=True,
            variant_ref=VariantRef(product_id=product_id, variant_id=variant_id) if product_id and variant_id else None,
        )

    return RoutingDecision(
        **base,
        supplier=FulfillmentSupplier.MANUAL,
        mode=MODE_MANUAL,
        retryable=False,
        reason=f'{REASON_UNKNOWN_SUPPLIER}: {tag}' if tag else REASON_UNKNOWN_SUPPLIER,
    )


def route_sale_line_items(
    line_items: Iterable[SaleLineItem],
    mappings_by_sku: Mapping[str, VariantMappingLike],
) -> list[RoutingDecision]:
    """Decide supplier and mode for every line item. Pure: no store access."""
    decisions: list[RoutingDecision] = []
    for item in line_items:
        mapping = mappings_by_sku.get(item.sku) if item.sku else None
        decisions.append(route_line_item(item, mapping))
    return decisions


def _mapping_rank(mapping: SupplierVariantMapping) -> int:
    tag = (mapping.supplier or '').strip().lower()
    if tag == FulfillmentSupplier.PRIMARY.value:
        return 0
    if tag == FulfillmentSupplier.FALLBACK.value:
        return 1
    return 2


def load_variant_mappings(db: Session, skus: Iterable[str | None]) -> dict[str, SupplierVariantMapping]:
    """Live mappings keyed by SKU. When a SKU maps to several suppliers, primary wins."""
    wanted = sorted({sku for sku in skus if sku})
    if not wanted:
        return {}
    rows = db.execute(
        select(SupplierVariantMapping).where(
            SupplierVariantMapping.sku.in_(wanted),
            SupplierVariantMapping.deleted.is_(False),
        )
    ).scalars().all()

    mappings: dict[str, SupplierVariantMapping] = {}
    for row in sorted(rows, key=lambda r: (_mapping_rank(r), r.id)):
        mappings.setdefault(row.sku, row)
    return mappings


def load_primary_variant_ref(db: Session, sku: str | None) -> VariantRef | None:
    if not sku:
        return None
    row = db.execute(
        select(SupplierVariantMapping).where(
            SupplierVariantMapping.sku == sku,
            SupplierVariantMapping.supplier == FulfillmentSupplier.PRIMARY.value,
            SupplierVariantMapping.deleted.is_(False),
        )
    ).scalars().first()
    if not row or not row.supplier_product_id or not row.supplier_variant_id:
        return None
    return VariantRef(product_id=row.supplier_product_id, variant_id=row.supplier_variant_id)
