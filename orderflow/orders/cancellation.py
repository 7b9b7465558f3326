from __future__ import annotations

import logging

from orderflow.core.security import Actor
from orderflow.orders.aggregates import Order
from orderflow.orders.errors import AuthorizationError, ConcurrencyConflictError, InvalidStateTransitionError
from orderflow.orders.state_machine import OrderStateMachine
from orderflow.orders.status import CANCELLABLE_STATUSES, OrderStatus

logger = logging.getLogger(__name__)


def _require_admin(actor: Actor, action: str) -> None:
    if not actor.is_admin:
        raise AuthorizationError(f"{action} requires admin role, got {actor.role}")


class CancellationNegotiator:
    """Two-phase cancellation: a request parks the order, an admin settles it."""

    def __init__(self, machine: OrderStateMachine):
        self.machine = machine

    def request_cancellation(self, order_id: str, actor: Actor, reason: str | None = None) -> Order:
        order = self.machine.get(order_id)
        if actor.role == "customer" and order.customer_id != actor.id:
            raise AuthorizationError(f"order {order_id} does not belong to customer {actor.id}")

        # One retry: the order may move between our read and the write. A rival
        # request landing first shows up as an illegal transition to the same status.
        for attempt in (1, 2):
            if order.status is OrderStatus.CANCELLATION_REQUESTED:
                logger.debug("cancellation already requested for order %s", order_id)
                return order
            if order.status not in CANCELLABLE_STATUSES:
                raise InvalidStateTransitionError(
                    order_id,
                    order.status.value,
                    OrderStatus.CANCELLATION_REQUESTED.value,
                    detail="cancellation is only possible before shipping",
                )
            try:
                return self.machine.advance_status(
                    order_id,
                    OrderStatus.CANCELLATION_REQUESTED,
                    actor,
                    reason=reason,
                    expected_status=order.status,
                )
            except (ConcurrencyConflictError, InvalidStateTransitionError):
                if attempt == 2:
                    raise
                order = self.machine.get(order_id)
        return order

    def confirm_cancellation(self, order_id: str, actor: Actor) -> Order:
        _require_admin(actor, "confirming a cancellation")
        order = self.machine.get(order_id)
        if order.status is not OrderStatus.CANCELLATION_REQUESTED:
            raise InvalidStateTransitionError(
                order_id,
                order.status.value,
                OrderStatus.CANCELLED.value,
                detail="no pending cancellation request",
            )
        return self.machine.advance_status(
            order_id,
            OrderStatus.CANCELLED,
            actor,
            reason="Cancellation confirmed",
            expected_status=OrderStatus.CANCELLATION_REQUESTED,
        )

    def reject_cancellation(self, order_id: str, actor: Actor) -> Order:
        _require_admin(actor, "rejecting a cancellation")
        order = self.machine.get(order_id)
        if order.status is not OrderStatus.CANCELLATION_REQUESTED or order.status_before_cancellation is None:
            raise InvalidStateTransitionError(
                order_id,
                order.status.value,
                "previous status",
                detail="no pending cancellation request",
            )
        return self.machine.advance_status(
            order_id,
            order.status_before_cancellation,
            actor,
            reason="Cancellation request rejected",
            expected_status=OrderStatus.CANCELLATION_REQUESTED,
        )
