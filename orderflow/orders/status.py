from __future__ import annotations

from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLATION_REQUESTED = "CANCELLATION_REQUESTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


# CANCELLATION_REQUESTED may also return to the status it was requested from;
# that target depends on the order and is resolved in allowed_targets().
TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {
            OrderStatus.PAID,
            OrderStatus.CANCELLATION_REQUESTED,
            OrderStatus.EXPIRED,
            OrderStatus.FAILED,
        }
    ),
    OrderStatus.PAID: frozenset(
        {OrderStatus.PROCESSING, OrderStatus.CANCELLATION_REQUESTED, OrderStatus.FAILED}
    ),
    OrderStatus.PROCESSING: frozenset(
        {OrderStatus.SHIPPED, OrderStatus.CANCELLATION_REQUESTED, OrderStatus.FAILED}
    ),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.FAILED}),
    OrderStatus.CANCELLATION_REQUESTED: frozenset({OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)

CANCELLABLE_STATUSES = frozenset(
    {OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.PROCESSING}
)


def allowed_targets(
    current: OrderStatus, status_before_cancellation: OrderStatus | None = None
) -> frozenset[OrderStatus]:
    targets = TRANSITIONS[current]
    if current is OrderStatus.CANCELLATION_REQUESTED and status_before_cancellation is not None:
        targets = targets | {status_before_cancellation}
    return targets


def can_transition(
    current: OrderStatus,
    target: OrderStatus,
    status_before_cancellation: OrderStatus | None = None,
) -> bool:
    return target in allowed_targets(current, status_before_cancellation)
