from __future__ import annotations

import logging
from typing import Protocol

from orderflow.orders.aggregates import Order
from orderflow.orders.events import ORDER_CREATED, TransitionEvent
from orderflow.orders.status import OrderStatus

logger = logging.getLogger(__name__)

RELEASING_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.EXPIRED})


class InventoryHook(Protocol):
    def reserve(self, order: Order) -> None:
        ...

    def release(self, order: Order) -> None:
        ...


class LoggingInventoryHook:
    """Stock keeping lives outside the order core; this only records the calls."""

    def reserve(self, order: Order) -> None:
        logger.info(
            "inventory reserve: order=%s items=%s",
            order.id,
            [(item.product_id, item.quantity) for item in order.items],
        )

    def release(self, order: Order) -> None:
        logger.info(
            "inventory release: order=%s status=%s items=%s",
            order.id,
            order.status.value,
            [(item.product_id, item.quantity) for item in order.items],
        )


class InventorySubscriber:
    def __init__(self, hook: InventoryHook):
        self.hook = hook

    def __call__(self, event: TransitionEvent) -> None:
        if event.event_type == ORDER_CREATED:
            self.hook.reserve(event.order)
        elif event.to_status in RELEASING_STATUSES:
            self.hook.release(event.order)
