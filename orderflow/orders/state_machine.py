from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from orderflow.core.security import Actor
from orderflow.orders.aggregates import DeliveryInfo, Order, OrderActivity, OrderItem
from orderflow.orders.commands import CreateOrderCommand, DeliveryInfoInput, OrderItemInput
from orderflow.orders.errors import (
    ConcurrencyConflictError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from orderflow.orders.events import ORDER_CREATED, ORDER_STATUS_CHANGED, EventBus, TransitionEvent
from orderflow.orders.status import OrderStatus, PaymentStatus, allowed_targets
from orderflow.orders.store import OrderStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _validation_message(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts)


def _activity_type(current: OrderStatus, target: OrderStatus) -> str:
    if target is OrderStatus.CANCELLATION_REQUESTED:
        return "cancellation_requested"
    if current is OrderStatus.CANCELLATION_REQUESTED:
        return "cancellation_confirmed" if target is OrderStatus.CANCELLED else "cancellation_rejected"
    return "status_change"


def _column_value(value: Any) -> Any:
    if isinstance(value, PaymentStatus):
        return value.value
    return value


class OrderStateMachine:
    """Applies order status transitions.

    Every status change goes through :meth:`advance_status`, which validates
    against the transition table and persists with a compare-and-set keyed on
    the status it read. Events are published only once the store has committed.
    """

    def __init__(
        self,
        store: OrderStore,
        bus: EventBus,
        *,
        clock: Clock | None = None,
        order_ttl: timedelta = timedelta(minutes=60),
        currency: str = "MNT",
    ):
        self.store = store
        self.bus = bus
        self.clock = clock or utc_now
        self.order_ttl = order_ttl
        self.currency = currency

    def get(self, order_id: str) -> Order:
        order = self.store.get(order_id)
        if order is None:
            raise NotFoundError(order_id)
        return order

    def create_order(
        self,
        customer_id: str,
        items: Iterable[OrderItemInput | Mapping[str, Any]],
        delivery_info: DeliveryInfoInput | Mapping[str, Any] | None = None,
        *,
        actor: Actor | None = None,
    ) -> Order:
        try:
            command = CreateOrderCommand.model_validate(
                {
                    "customer_id": customer_id,
                    "items": list(items or []),
                    "delivery": delivery_info if delivery_info is not None else {},
                }
            )
        except PydanticValidationError as exc:
            raise ValidationError(_validation_message(exc)) from exc

        now = self.clock()
        delivery = command.delivery
        order = Order(
            id=str(uuid4()),
            order_number="",
            customer_id=command.customer_id,
            status=OrderStatus.PENDING,
            items=tuple(
                OrderItem(
                    product_id=item.product_id,
                    product_name=item.product_name,
                    unit_price=item.unit_price,
                    quantity=item.quantity,
                )
                for item in command.items
            ),
            currency=self.currency,
            payment_status=PaymentStatus.PENDING,
            payment_method=None,
            delivery=DeliveryInfo(
                delivery_date=delivery.delivery_date,
                time_slot=delivery.time_slot,
                address=dict(delivery.address),
                email=delivery.email,
                phone=delivery.phone,
            ),
            created_at=now,
            updated_at=now,
            expires_at=now + self.order_ttl,
        )
        actor = actor or Actor(role="customer", id=command.customer_id)
        activity = OrderActivity(
            order_id=order.id,
            type="created",
            from_value=None,
            to_value=OrderStatus.PENDING.value,
            description=f"Order placed with {len(order.items)} item(s), total {order.total_amount} {order.currency}",
            performed_by=actor.id,
            performed_by_role=actor.role,
            created_at=now,
        )
        order = self.store.insert(order, activity)
        logger.info(
            "order created: id=%s number=%s customer=%s total=%s",
            order.id,
            order.order_number,
            order.customer_id,
            order.total_amount,
        )
        self.bus.publish(
            TransitionEvent(
                event_type=ORDER_CREATED,
                order=order,
                from_status=None,
                to_status=OrderStatus.PENDING,
                actor_id=actor.id,
                actor_role=actor.role,
                occurred_at=now,
            )
        )
        return order

    def _check_transition(self, order: Order, target: OrderStatus) -> None:
        targets = allowed_targets(order.status, order.status_before_cancellation)
        if target not in targets:
            allowed = ", ".join(sorted(status.value for status in targets)) or "none"
            raise InvalidStateTransitionError(
                order.id,
                order.status.value,
                target.value,
                detail=f"allowed: {allowed}",
            )

    def _transition_fields(
        self,
        order: Order,
        target: OrderStatus,
        actor: Actor,
        reason: str | None,
        payment_method: str | None,
        now: datetime,
    ) -> dict[str, Any]:
        fields: dict[str, Any] = {"status": target, "updated_at": now}

        if target is OrderStatus.CANCELLATION_REQUESTED:
            fields.update(
                cancellation_requested_at=now,
                cancellation_requested_by=actor.role,
                cancellation_reason=reason,
                status_before_cancellation=order.status,
            )
        elif order.status is OrderStatus.CANCELLATION_REQUESTED:
            fields["cancellation_requested_at"] = None
            if target is not OrderStatus.CANCELLED:
                # Rejected: the order carries on as if nothing was requested.
                fields.update(
                    cancellation_requested_by=None,
                    cancellation_reason=None,
                    status_before_cancellation=None,
                )

        if target is OrderStatus.PAID:
            fields["payment_status"] = PaymentStatus.PAID
            if payment_method:
                fields["payment_method"] = payment_method
        elif target is OrderStatus.EXPIRED:
            fields["payment_status"] = PaymentStatus.EXPIRED
        elif target is OrderStatus.FAILED and order.status is OrderStatus.PENDING:
            fields["payment_status"] = PaymentStatus.FAILED
        elif target is OrderStatus.CANCELLED and order.payment_status is not PaymentStatus.PAID:
            fields["payment_status"] = PaymentStatus.CANCELLED
        return fields

    def advance_status(
        self,
        order_id: str,
        target: OrderStatus | str,
        actor: Actor,
        *,
        reason: str | None = None,
        expected_status: OrderStatus | str | None = None,
        payment_method: str | None = None,
    ) -> Order:
        try:
            target = OrderStatus(target)
            expected = OrderStatus(expected_status) if expected_status is not None else None
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        # A caller naming the status it expects gets a strict compare-and-set.
        attempts = 1 if expected is not None else 2
        for attempt in range(1, attempts + 1):
            order = self.get(order_id)
            # A move that is illegal from the current status is reported as such
            # even when the caller expected another status.
            self._check_transition(order, target)
            if expected is not None and order.status is not expected:
                raise ConcurrencyConflictError(order_id, expected.value)

            now = self.clock()
            fields = self._transition_fields(order, target, actor, reason, payment_method, now)
            activity = OrderActivity(
                order_id=order.id,
                type=_activity_type(order.status, target),
                from_value=order.status.value,
                to_value=target.value,
                description=reason or f"Status changed from {order.status.value} to {target.value}",
                performed_by=actor.id,
                performed_by_role=actor.role,
                created_at=now,
            )
            changes = {key: _column_value(value) for key, value in fields.items()}
            if self.store.compare_and_set(order.id, order.status, changes, activity):
                updated = replace(order, **fields)
                logger.info(
                    "order %s: %s -> %s by %s:%s",
                    order.id,
                    order.status.value,
                    target.value,
                    actor.role,
                    actor.id,
                )
                self.bus.publish(
                    TransitionEvent(
                        event_type=ORDER_STATUS_CHANGED,
                        order=updated,
                        from_status=order.status,
                        to_status=target,
                        actor_id=actor.id,
                        actor_role=actor.role,
                        occurred_at=now,
                        reason=reason,
                    )
                )
                return updated

            logger.info(
                "order %s changed concurrently while moving %s -> %s (attempt %s/%s)",
                order.id,
                order.status.value,
                target.value,
                attempt,
                attempts,
            )

        raise ConcurrencyConflictError(order_id, order.status.value)
