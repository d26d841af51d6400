from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol


@dataclass(frozen=True)
class Recipient:
    name: str
    address1: str
    address2: str
    city: str
    province: str
    country: str
    zip: str
    phone: str


@dataclass(frozen=True)
class SupplierOrderRequest:
    order_number: str
    recipient: Recipient
    variant_id: str
    quantity: int


@dataclass(frozen=True)
class SupplierOrderResult:
    supplier_order_id: str
    # None when the supplier accepted the order without quoting a cost.
    product_cost: Decimal | None
    shipping_cost: Decimal | None

    @property
    def cost_known(self) -> bool:
        return self.product_cost is not None and self.shipping_cost is not None

    @property
    def total_cost(self) -> Decimal | None:
        if not self.cost_known:
            return None
        return self.product_cost + self.shipping_cost


@dataclass(frozen=True)
class SupplierOrderDetail:
    supplier_order_id: str
    tracking_number: str | None
    carrier: str | None = None


@dataclass(frozen=True)
class ShipmentStatus:
    status_text: str
    tracking_url: str | None = None
    carrier: str | None = None


class PrimarySupplier(Protocol):
    def create_order(self, request: SupplierOrderRequest) -> SupplierOrderResult: ...

    def get_order(self, supplier_order_id: str) -> SupplierOrderDetail: ...

    def get_tracking(self, tracking_number: str) -> ShipmentStatus: ...


@dataclass(frozen=True)
class StorefrontFulfillmentRequest:
    sale_id: str
    line_item_id: str
    quantity: int
    tracking_number: str
    tracking_url: str | None
    carrier: str | None


class Storefront(Protocol):
    def create_fulfillment(self, request: StorefrontFulfillmentRequest) -> str: ...
