"""Typed view over the ``metadata`` JSON column of a fulfillment record.

The column holds a small, versioned document with a fixed set of sections
(retry bookkeeping, fallback escalation, profit block, routing decision).
Records are always read through :func:`read_meta` and written back with
:func:`write_meta`; nothing else should poke at the raw dict.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from app.models import FulfillmentOrder, FulfillmentSupplier

META_VERSION = 1
MAX_ERROR_LENGTH = 500


class BlockReason(str, Enum):
    NEGATIVE_PROFIT = 'NEGATIVE_PROFIT'
    COST_UNKNOWN = 'COST_UNKNOWN'


@dataclass(frozen=True)
class RetryState:
    count: int = 0
    last_error: str | None = None
    last_at: str | None = None


@dataclass(frozen=True)
class FallbackInfo:
    provider: str
    from_supplier: str | None
    reason: str | None
    at: str
    shipped_at: str | None = None


@dataclass(frozen=True)
class BlockInfo:
    reason: BlockReason
    detail: str | None = None
    at: str | None = None
    rejected_supplier_order_id: str | None = None


@dataclass(frozen=True)
class RoutingInfo:
    mode: str
    reason: str | None = None


@dataclass(frozen=True)
class FulfillmentMeta:
    retry: RetryState = field(default_factory=RetryState)
    fallback: FallbackInfo | None = None
    block: BlockInfo | None = None
    routing: RoutingInfo | None = None

    @property
    def is_escalated(self) -> bool:
        return self.fallback is not None and bool(self.fallback.provider)

    @property
    def is_profit_blocked(self) -> bool:
        return self.block is not None and self.block.reason == BlockReason.NEGATIVE_PROFIT

    @property
    def is_cost_unknown(self) -> bool:
        return self.block is not None and self.block.reason == BlockReason.COST_UNKNOWN

    def with_failure(self, error: str, at: datetime) -> FulfillmentMeta:
        return replace(
            self,
            retry=RetryState(
                count=self.retry.count + 1,
                last_error=error[:MAX_ERROR_LENGTH],
                last_at=at.isoformat(),
            ),
        )

    def with_block(self, block: BlockInfo) -> FulfillmentMeta:
        return replace(self, block=block)

    def without_block(self) -> FulfillmentMeta:
        return replace(self, block=None)

    def with_fallback(self, *, from_supplier: str | None, reason: str | None, at: datetime) -> FulfillmentMeta:
        return replace(
            self,
            fallback=FallbackInfo(
                provider=FulfillmentSupplier.FALLBACK.value,
                from_supplier=from_supplier,
                reason=reason,
                at=at.isoformat(),
            ),
        )

    def with_fallback_shipped(self, at: datetime) -> FulfillmentMeta:
        if self.fallback is None:
            return self
        return replace(self, fallback=replace(self.fallback, shipped_at=at.isoformat()))

    def to_dict(self) -> dict:
        payload: dict = {
            'v': META_VERSION,
            'retry': {
                'count': self.retry.count,
                'last_error': self.retry.last_error,
                'last_at': self.retry.last_at,
            },
        }
        if self.fallback is not None:
            payload['fallback'] = {
                'provider': self.fallback.provider,
                'from': self.fallback.from_supplier,
                'reason': self.fallback.reason,
                'at': self.fallback.at,
                'shipped_at': self.fallback.shipped_at,
            }
        if self.block is not None:
            payload['block'] = {
                'reason': self.block.reason.value,
                'detail': self.block.detail,
                'at': self.block.at,
                'rejected_supplier_order_id': self.block.rejected_supplier_order_id,
            }
        if self.routing is not None:
            payload['routing'] = {'mode': self.routing.mode, 'reason': self.routing.reason}
        return payload

    @classmethod
    def from_dict(cls, raw: dict | None) -> FulfillmentMeta:
        if not isinstance(raw, dict):
            return cls()

        retry_raw = raw.get('retry') or {}
        try:
            count = max(int(retry_raw.get('count') or 0), 0)
        except (TypeError, ValueError):
            count = 0
        retry = RetryState(
            count=count,
            last_error=retry_raw.get('last_error'),
            last_at=retry_raw.get('last_at'),
        )

        fallback = None
        fallback_raw = raw.get('fallback')
        if isinstance(fallback_raw, dict) and fallback_raw.get('provider'):
            fallback = FallbackInfo(
                provider=str(fallback_raw['provider']),
                from_supplier=fallback_raw.get('from'),
                reason=fallback_raw.get('reason'),
                at=str(fallback_raw.get('at') or ''),
                shipped_at=fallback_raw.get('shipped_at'),
            )

        block = None
        block_raw = raw.get('block')
        if isinstance(block_raw, dict):
            try:
                reason = BlockReason(block_raw.get('reason'))
            except ValueError:
                reason = None
            if reason is not None:
                block = BlockInfo(
                    reason=reason,
                    detail=block_raw.get('detail'),
                    at=block_raw.get('at'),
                    rejected_supplier_order_id=block_raw.get('rejected_supplier_order_id'),
                )

        routing = None
        routing_raw = raw.get('routing')
        if isinstance(routing_raw, dict) and routing_raw.get('mode'):
            routing = RoutingInfo(mode=str(routing_raw['mode']), reason=routing_raw.get('reason'))

        return cls(retry=retry, fallback=fallback, block=block, routing=routing)


def read_meta(order: FulfillmentOrder) -> FulfillmentMeta:
    return FulfillmentMeta.from_dict(order.meta)


def write_meta(order: FulfillmentOrder, meta: FulfillmentMeta) -> None:
    # Assign a fresh dict so the ORM registers the change.
    order.meta = meta.to_dict()
