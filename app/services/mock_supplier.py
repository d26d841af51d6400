from __future__ import annotations

import hashlib
from decimal import Decimal

from app.services.supplier_provider import (
    ShipmentStatus,
    SupplierOrderDetail,
    SupplierOrderRequest,
    SupplierOrderResult,
)


def _checksum(value: str) -> int:
    return sum(ord(char) for char in value)


class MockPrimarySupplier:
    """Deterministic stand-in for the primary supplier API, used for local runs."""

    def __init__(self) -> None:
        self.status_cycle = ['Awaiting pickup', 'In transit', 'Out for delivery', 'Delivered']

    def create_order(self, request: SupplierOrderRequest) -> SupplierOrderResult:
        digest = hashlib.sha1(request.order_number.encode('utf-8')).hexdigest()[:12].upper()
        base = (_checksum(request.variant_id) % 15) + 5
        return SupplierOrderResult(
            supplier_order_id=f'MOCK-{digest}',
            product_cost=Decimal(base * request.quantity).quantize(Decimal('0.01')),
            shipping_cost=Decimal('3.50'),
        )

    def get_order(self, supplier_order_id: str) -> SupplierOrderDetail:
        return SupplierOrderDetail(
            supplier_order_id=supplier_order_id,
            tracking_number=f'MOCKTRK{_checksum(supplier_order_id):08d}',
            carrier='Mock Post',
        )

    def get_tracking(self, tracking_number: str) -> ShipmentStatus:
        status = self.status_cycle[_checksum(tracking_number) % len(self.status_cycle)]
        return ShipmentStatus(status_text=status, tracking_url=None, carrier='Mock Post')
