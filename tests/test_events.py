from __future__ import annotations

import threading

from orderflow.orders.events import ORDER_STATUS_CHANGED, EventBus, TransitionEvent
from orderflow.orders.state_machine import OrderStateMachine
from orderflow.orders.status import OrderStatus
from orderflow.orders.store import SqlAlchemyOrderStore
from tests.conftest import ITEMS, START


def _event(order) -> TransitionEvent:
    return TransitionEvent(
        event_type=ORDER_STATUS_CHANGED,
        order=order,
        from_status=OrderStatus.PENDING,
        to_status=OrderStatus.PAID,
        actor_id="payments",
        actor_role="system",
        occurred_at=START,
    )


def _failing(event: TransitionEvent) -> None:
    raise RuntimeError("smtp relay down")


def test_worker_pool_delivers_despite_failing_handler(place_order):
    order = place_order()
    bus = EventBus(workers=2)
    seen: list[tuple[str, str]] = []
    release = threading.Event()

    def recording(event: TransitionEvent) -> None:
        release.wait(timeout=5)
        seen.append((event.order_id, threading.current_thread().name))

    bus.subscribe(_failing)
    bus.subscribe(recording)

    bus.publish(_event(order))
    # publish returned while the handler is still blocked on a worker.
    assert seen == []

    release.set()
    bus.shutdown(wait=True)

    assert len(seen) == 1
    order_id, thread_name = seen[0]
    assert order_id == order.id
    assert thread_name.startswith("order-events")


def test_publish_after_shutdown_runs_inline(place_order):
    order = place_order()
    bus = EventBus(workers=2)
    seen: list[str] = []
    bus.subscribe(_failing)
    bus.subscribe(lambda event: seen.append(threading.current_thread().name))

    bus.shutdown(wait=True)
    bus.publish(_event(order))

    assert seen == [threading.current_thread().name]


def test_pooled_bus_delivers_committed_transitions(clock, admin):
    bus = EventBus(workers=2)
    delivered: list[OrderStatus] = []
    done = threading.Event()

    def recording(event: TransitionEvent) -> None:
        delivered.append(event.to_status)
        if event.to_status is OrderStatus.PAID:
            done.set()

    bus.subscribe(recording)
    machine = OrderStateMachine(SqlAlchemyOrderStore(), bus, clock=clock)
    order = machine.create_order("cust-1", ITEMS)
    machine.advance_status(order.id, OrderStatus.PAID, admin)

    assert done.wait(timeout=5)
    bus.shutdown(wait=True)
    assert sorted(status.value for status in delivered) == ["PAID", "PENDING"]
    assert machine.get(order.id).status is OrderStatus.PAID
