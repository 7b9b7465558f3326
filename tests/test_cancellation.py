from __future__ import annotations

import pytest

from orderflow.core.security import Actor
from orderflow.orders.errors import AuthorizationError, InvalidStateTransitionError
from orderflow.orders.status import OrderStatus, PaymentStatus
from tests.conftest import START


def _status_events(service):
    events = []
    service.bus.subscribe(lambda event: events.append(event) if event.from_status is not None else None)
    return events


def test_request_then_confirm_cancels_pending_order(service, place_order, customer, admin, email_sender):
    order = place_order()

    requested = service.request_cancellation(order.id, customer, "changed my mind")
    assert requested.status is OrderStatus.CANCELLATION_REQUESTED
    assert requested.cancellation_requested_at == START
    assert requested.cancellation_requested_by == "customer"
    assert requested.cancellation_reason == "changed my mind"
    assert requested.status_before_cancellation is OrderStatus.PENDING

    cancelled = service.confirm_cancellation(order.id, admin)
    assert cancelled.status is OrderStatus.CANCELLED
    assert cancelled.cancellation_requested_at is None
    assert cancelled.payment_status is PaymentStatus.CANCELLED

    stored = service.get_order_by_id(order.id)
    assert stored.status is OrderStatus.CANCELLED
    assert stored.cancellation_requested_at is None

    notices = [m for m in email_sender.sent if m.subject.endswith("cancelled")]
    assert len(notices) == 1
    assert notices[0].to == "buyer@example.com"


def test_request_cancellation_is_idempotent(service, place_order, customer):
    order = place_order()
    events = _status_events(service)

    first = service.request_cancellation(order.id, customer, "first")
    second = service.request_cancellation(order.id, customer, "second")

    assert first == second
    assert second.cancellation_reason == "first"
    assert [e.to_status for e in events] == [OrderStatus.CANCELLATION_REQUESTED]
    timeline = service.get_order_timeline(order.id)
    assert [a.type for a in timeline].count("cancellation_requested") == 1


def test_shipped_order_cannot_be_cancelled(service, order_in_status, customer):
    order = order_in_status("SHIPPED")

    with pytest.raises(InvalidStateTransitionError):
        service.request_cancellation(order.id, customer, "too late")

    assert service.get_order_by_id(order.id).status is OrderStatus.SHIPPED


@pytest.mark.parametrize("status", ["DELIVERED", "CANCELLED", "EXPIRED", "FAILED"])
def test_terminal_orders_cannot_be_cancelled(service, order_in_status, admin, status):
    order = order_in_status(status)
    with pytest.raises(InvalidStateTransitionError):
        service.request_cancellation(order.id, admin, "cleanup")


def test_reject_restores_previous_status(service, order_in_status, customer, admin):
    order = order_in_status("PROCESSING")
    service.request_cancellation(order.id, customer, "wrong size")

    restored = service.reject_cancellation(order.id, admin)

    assert restored.status is OrderStatus.PROCESSING
    assert restored.cancellation_requested_at is None
    assert restored.cancellation_reason is None
    assert restored.cancellation_requested_by is None
    assert restored.status_before_cancellation is None
    assert service.get_order_by_id(order.id) == restored
    assert service.get_order_timeline(order.id)[-1].type == "cancellation_rejected"


def test_confirm_and_reject_require_admin(service, place_order, customer):
    order = place_order()
    service.request_cancellation(order.id, customer)

    with pytest.raises(AuthorizationError):
        service.confirm_cancellation(order.id, customer)
    with pytest.raises(AuthorizationError):
        service.reject_cancellation(order.id, Actor(role="system", id="system"))
    assert service.get_order_by_id(order.id).status is OrderStatus.CANCELLATION_REQUESTED


def test_confirm_without_request_is_invalid(service, order_in_status, admin):
    order = order_in_status("PAID")
    with pytest.raises(InvalidStateTransitionError):
        service.confirm_cancellation(order.id, admin)
    with pytest.raises(InvalidStateTransitionError):
        service.reject_cancellation(order.id, admin)


def test_customer_cannot_cancel_someone_elses_order(service, place_order):
    order = place_order("cust-1")
    with pytest.raises(AuthorizationError):
        service.request_cancellation(order.id, Actor(role="customer", id="cust-2"), "not mine")
    assert service.get_order_by_id(order.id).status is OrderStatus.PENDING


def test_cancelled_and_expired_orders_release_stock(service, place_order, customer, admin, inventory, clock):
    cancelled = place_order()
    service.request_cancellation(cancelled.id, customer)
    service.confirm_cancellation(cancelled.id, admin)

    expired = place_order()
    clock.advance(minutes=61)
    service.cancel_expired_pending_orders()

    releases = [order_id for action, order_id in inventory.calls if action == "release"]
    assert releases == [cancelled.id, expired.id]
