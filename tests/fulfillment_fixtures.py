from __future__ import annotations

from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.models import Base, FulfillmentOrder, FulfillmentStatus, FulfillmentSupplier, SupplierVariantMapping
from app.services.errors import StorefrontCallFailed, SupplierCallFailed
from app.services.fulfillment_meta import FulfillmentMeta
from app.services.supplier_provider import (
    ShipmentStatus,
    SupplierOrderDetail,
    SupplierOrderRequest,
    SupplierOrderResult,
)


def make_session_factory() -> sessionmaker:
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def add_mapping(
    db,
    *,
    sku: str,
    supplier: str = 'primary',
    product_id: str | None = 'CJ-PROD-1',
    variant_id: str | None = 'CJ-VAR-1',
) -> SupplierVariantMapping:
    mapping = SupplierVariantMapping(
        sku=sku,
        supplier=supplier,
        supplier_product_id=product_id,
        supplier_variant_id=variant_id,
        deleted=False,
    )
    db.add(mapping)
    db.commit()
    return mapping


def add_order(
    db,
    *,
    sale_id: str = '1001',
    line_item_id: str = '1',
    sku: str | None = 'SKU-1',
    quantity: int = 1,
    sale_price: str = '30.00',
    supplier: FulfillmentSupplier = FulfillmentSupplier.PRIMARY,
    status: FulfillmentStatus = FulfillmentStatus.PENDING,
    meta: FulfillmentMeta | None = None,
    **fields,
) -> FulfillmentOrder:
    order = FulfillmentOrder(
        sale_id=sale_id,
        line_item_id=line_item_id,
        sku=sku,
        quantity=quantity,
        shipping_name='Ada Lovelace',
        shipping_address1='1 Main St',
        shipping_city='Springfield',
        shipping_country='US',
        shipping_zip='12345',
        supplier=supplier,
        status=status,
        sale_price=Decimal(sale_price),
        meta=(meta or FulfillmentMeta()).to_dict(),
        **fields,
    )
    db.add(order)
    db.commit()
    return order


class FakeSupplier:
    """Scriptable primary supplier. Records every call it receives."""

    def __init__(
        self,
        *,
        product_cost: str | None = '12.00',
        shipping_cost: str = '3.00',
        fail_create: bool = False,
        tracking_number: str | None = 'CJTRK0001',
        status_text: str = 'In transit',
    ) -> None:
        self.product_cost = Decimal(product_cost) if product_cost is not None else None
        self.shipping_cost = Decimal(shipping_cost)
        self.fail_create = fail_create
        self.tracking_number = tracking_number
        self.status_text = status_text
        self.create_calls: list[SupplierOrderRequest] = []
        self.get_order_calls: list[str] = []
        self.tracking_calls: list[str] = []

    def create_order(self, request: SupplierOrderRequest) -> SupplierOrderResult:
        self.create_calls.append(request)
        if self.fail_create:
            raise SupplierCallFailed('Supplier API network error on /shopping/order/createOrderV2: timed out')
        return SupplierOrderResult(
            supplier_order_id=f'CJ-{len(self.create_calls):04d}',
            product_cost=self.product_cost,
            shipping_cost=self.shipping_cost,
        )

    def get_order(self, supplier_order_id: str) -> SupplierOrderDetail:
        self.get_order_calls.append(supplier_order_id)
        return SupplierOrderDetail(
            supplier_order_id=supplier_order_id,
            tracking_number=self.tracking_number,
            carrier='CJPacket',
        )

    def get_tracking(self, tracking_number: str) -> ShipmentStatus:
        self.tracking_calls.append(tracking_number)
        return ShipmentStatus(status_text=self.status_text, tracking_url=None, carrier=None)


class FakeStorefront:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls = []

    def create_fulfillment(self, request) -> str:
        self.calls.append(request)
        if self.fail:
            raise StorefrontCallFailed('Storefront API error 502 on /orders/1001/fulfillments.json')
        return f'FUL-{len(self.calls)}'
