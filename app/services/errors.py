from __future__ import annotations


class FulfillmentError(Exception):
    """Base of the fulfillment error taxonomy.

    ``kind`` is the stable name surfaced to API callers, ``status_code`` the
    HTTP status the control API answers with, and ``retryable`` tells the
    retry worker whether another attempt against the same supplier can help.
    """

    kind = 'FulfillmentError'
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, order_id: int | None = None):
        super().__init__(message)
        self.message = message
        self.order_id = order_id

    def to_detail(self) -> dict:
        return {'kind': self.kind, 'message': self.message}


class NotFound(FulfillmentError):
    kind = 'NotFound'
    status_code = 404


class InvalidTransition(FulfillmentError):
    kind = 'InvalidTransition'
    status_code = 409

    def __init__(self, current: str, requested: str, *, order_id: int | None = None):
        super().__init__(f'Cannot move fulfillment from {current} to {requested}', order_id=order_id)
        self.current = current
        self.requested = requested


class AlreadyEscalated(FulfillmentError):
    kind = 'AlreadyEscalated'
    status_code = 409

    def __init__(self, order_id: int):
        super().__init__('Already escalated; primary submission forbidden', order_id=order_id)


class AlreadySubmitted(FulfillmentError):
    """Idempotency no-op: the supplier already holds an order for this record."""

    kind = 'AlreadySubmitted'
    status_code = 409

    def __init__(self, order_id: int, supplier_order_id: str):
        super().__init__(f'Supplier order {supplier_order_id} already exists', order_id=order_id)
        self.supplier_order_id = supplier_order_id


class NegativeProfitBlocked(FulfillmentError):
    kind = 'NegativeProfitBlocked'
    status_code = 409

    def __init__(self, order_id: int, *, sale_price, total_cost):
        super().__init__(
            f'NEGATIVE_PROFIT: supplier cost {total_cost} exceeds sale price {sale_price}',
            order_id=order_id,
        )
        self.sale_price = sale_price
        self.total_cost = total_cost


class SupplierCostUnknown(FulfillmentError):
    """The supplier accepted the order but did not report what it costs."""

    kind = 'SupplierCostUnknown'
    status_code = 409

    def __init__(self, order_id: int, supplier_order_id: str):
        super().__init__(
            f'COST_UNKNOWN: supplier order {supplier_order_id} was placed without a cost quote; review before shipping',
            order_id=order_id,
        )
        self.supplier_order_id = supplier_order_id


class MissingSupplierMapping(FulfillmentError):
    kind = 'MissingSupplierMapping'
    status_code = 409

    def __init__(self, order_id: int, sku: str | None):
        super().__init__(f'No supplier mapping for sku={sku}', order_id=order_id)
        self.sku = sku


class LockHeld(FulfillmentError):
    kind = 'LockHeld'
    status_code = 409

    def __init__(self, order_id: int):
        super().__init__('Fulfillment is being processed by another worker', order_id=order_id)


class ExternalCallFailed(FulfillmentError):
    kind = 'ExternalCallFailed'
    status_code = 500
    retryable = True


class SupplierCallFailed(ExternalCallFailed):
    kind = 'SupplierCallFailed'


class StorefrontCallFailed(ExternalCallFailed):
    kind = 'StorefrontCallFailed'
