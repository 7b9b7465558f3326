from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Iterable, Mapping

from sqlalchemy.orm import sessionmaker

from orderflow.core.config import Settings, get_settings
from orderflow.core.security import Actor, system_actor
from orderflow.notifications.channels import (
    EmailSender,
    FiscalReceiptClient,
    build_email_sender,
    build_fiscal_receipt_client,
)
from orderflow.notifications.dispatcher import NotificationDispatcher
from orderflow.notifications.log import NotificationLogStore, NotificationRecord
from orderflow.orders.aggregates import Order, OrderActivity
from orderflow.orders.cancellation import CancellationNegotiator
from orderflow.orders.commands import DeliveryInfoInput, OrderFilter, OrderItemInput
from orderflow.orders.errors import AuthorizationError
from orderflow.orders.events import EventBus
from orderflow.orders.inventory import InventoryHook, InventorySubscriber, LoggingInventoryHook
from orderflow.orders.state_machine import Clock, OrderStateMachine
from orderflow.orders.status import OrderStatus, PaymentStatus
from orderflow.orders.store import OrderStore, SqlAlchemyOrderStore
from orderflow.orders.sweeper import ExpirationSweeper, IntervalScheduler, Scheduler

logger = logging.getLogger(__name__)


def _check_owner(order: Order, actor: Actor | None) -> None:
    if actor is not None and actor.role == "customer" and order.customer_id != actor.id:
        raise AuthorizationError(f"order {order.id} does not belong to customer {actor.id}")


class OrderService:
    """The single entry point for routes, the payment webhook and the CLI."""

    def __init__(
        self,
        store: OrderStore,
        machine: OrderStateMachine,
        negotiator: CancellationNegotiator,
        sweeper: ExpirationSweeper,
        notification_log: NotificationLogStore,
        bus: EventBus,
        scheduler: Scheduler | None = None,
    ):
        self.store = store
        self.machine = machine
        self.negotiator = negotiator
        self.sweeper = sweeper
        self.notification_log = notification_log
        self.bus = bus
        self.scheduler = scheduler

    def start(self) -> None:
        if self.scheduler is not None:
            self.scheduler.start()

    def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.stop()
        self.bus.shutdown()

    def create_order(
        self,
        customer_id: str,
        items: Iterable[OrderItemInput | Mapping[str, Any]],
        delivery_info: DeliveryInfoInput | Mapping[str, Any] | None = None,
        actor: Actor | None = None,
    ) -> Order:
        return self.machine.create_order(customer_id, items, delivery_info, actor=actor)

    def request_cancellation(self, order_id: str, actor: Actor, reason: str | None = None) -> Order:
        return self.negotiator.request_cancellation(order_id, actor, reason)

    def confirm_cancellation(self, order_id: str, actor: Actor) -> Order:
        return self.negotiator.confirm_cancellation(order_id, actor)

    def reject_cancellation(self, order_id: str, actor: Actor) -> Order:
        return self.negotiator.reject_cancellation(order_id, actor)

    def update_order_status(
        self,
        order_id: str,
        target_status: OrderStatus | str,
        actor: Actor,
        reason: str | None = None,
    ) -> Order:
        return self.machine.advance_status(order_id, target_status, actor, reason=reason)

    def mark_paid(self, order_id: str, payment_method: str | None = None, actor: Actor | None = None) -> Order:
        order = self.machine.get(order_id)
        if order.payment_status is PaymentStatus.PAID:
            # Payment providers redeliver callbacks.
            logger.info("order %s already paid, ignoring duplicate payment confirmation", order_id)
            return order
        return self.machine.advance_status(
            order_id,
            OrderStatus.PAID,
            actor or system_actor(),
            reason="Payment confirmed",
            expected_status=OrderStatus.PENDING,
            payment_method=payment_method,
        )

    def mark_payment_failed(self, order_id: str, reason: str | None = None, actor: Actor | None = None) -> Order:
        return self.machine.advance_status(
            order_id,
            OrderStatus.FAILED,
            actor or system_actor(),
            reason=reason or "Payment failed",
            expected_status=OrderStatus.PENDING,
        )

    def get_order_by_id(self, order_id: str, actor: Actor | None = None) -> Order:
        order = self.machine.get(order_id)
        _check_owner(order, actor)
        return order

    def get_all_orders(self, order_filter: OrderFilter | None = None, actor: Actor | None = None) -> list[Order]:
        order_filter = order_filter or OrderFilter()
        if actor is not None and actor.role == "customer":
            order_filter = order_filter.model_copy(update={"customer_id": actor.id})
        return self.store.list_orders(order_filter)

    def get_order_timeline(self, order_id: str, actor: Actor | None = None) -> list[OrderActivity]:
        self.get_order_by_id(order_id, actor)
        return self.store.timeline(order_id)

    def list_failed_notifications(self, limit: int = 100) -> list[NotificationRecord]:
        return self.notification_log.list_failed(limit=limit)

    def cancel_expired_pending_orders(self) -> dict[str, int]:
        return {"cancelled_count": self.sweeper.run_once()}


def build_order_service(
    settings: Settings | None = None,
    *,
    session_factory: sessionmaker | None = None,
    email_sender: EmailSender | None = None,
    receipt_client: FiscalReceiptClient | None = None,
    inventory: InventoryHook | None = None,
    clock: Clock | None = None,
) -> OrderService:
    settings = settings or get_settings()

    bus = EventBus(workers=settings.notification_workers)
    store = SqlAlchemyOrderStore(session_factory)
    machine = OrderStateMachine(
        store,
        bus,
        clock=clock,
        order_ttl=timedelta(minutes=settings.order_ttl_minutes),
        currency=settings.currency,
    )
    notification_log = NotificationLogStore(session_factory)
    dispatcher = NotificationDispatcher(
        email_sender or build_email_sender(settings),
        receipt_client or build_fiscal_receipt_client(settings),
        notification_log,
        admin_email=settings.admin_notification_email,
        clock=clock,
    )
    bus.subscribe(InventorySubscriber(inventory or LoggingInventoryHook()))
    bus.subscribe(dispatcher)

    sweeper = ExpirationSweeper(store, machine, clock=clock, batch_size=settings.sweep_batch_size)
    scheduler = None
    if settings.sweeper_enabled:
        scheduler = IntervalScheduler(sweeper.run_once, settings.sweep_interval_seconds)

    return OrderService(
        store=store,
        machine=machine,
        negotiator=CancellationNegotiator(machine),
        sweeper=sweeper,
        notification_log=notification_log,
        bus=bus,
        scheduler=scheduler,
    )
