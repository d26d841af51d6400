from __future__ import annotations

from app.models import FulfillmentStatus
from app.services.errors import InvalidTransition

TERMINAL_STATUSES = frozenset(
    {
        FulfillmentStatus.DELIVERED,
        FulfillmentStatus.CANCELLED,
        FulfillmentStatus.RETURNED,
    }
)

AUTOMATIC_TRANSITIONS: dict[FulfillmentStatus, frozenset[FulfillmentStatus]] = {
    FulfillmentStatus.PENDING: frozenset({FulfillmentStatus.ORDERED, FulfillmentStatus.FAILED}),
    FulfillmentStatus.FAILED: frozenset({FulfillmentStatus.ORDERED}),
    FulfillmentStatus.ORDERED: frozenset({FulfillmentStatus.SHIPPED, FulfillmentStatus.DELIVERED}),
    FulfillmentStatus.SHIPPED: frozenset({FulfillmentStatus.DELIVERED}),
}

ADMIN_SINK_STATUSES = frozenset({FulfillmentStatus.CANCELLED, FulfillmentStatus.RETURNED})

# Escalation swaps supplier and restarts the lifecycle at pending.
ESCALATABLE_STATUSES = frozenset({FulfillmentStatus.PENDING, FulfillmentStatus.FAILED})


def is_terminal(status: FulfillmentStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: FulfillmentStatus, requested: FulfillmentStatus, *, administrative: bool = False) -> bool:
    if requested in AUTOMATIC_TRANSITIONS.get(current, frozenset()):
        return True
    if administrative and requested in ADMIN_SINK_STATUSES:
        return current not in TERMINAL_STATUSES
    return False


def assert_transition(
    current: FulfillmentStatus,
    requested: FulfillmentStatus,
    *,
    administrative: bool = False,
    order_id: int | None = None,
) -> None:
    if not can_transition(current, requested, administrative=administrative):
        raise InvalidTransition(current.value, requested.value, order_id=order_id)
