from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable
from uuid import uuid4

from orderflow.orders.aggregates import Order
from orderflow.orders.status import OrderStatus

logger = logging.getLogger(__name__)

ORDER_CREATED = "OrderCreated"
ORDER_STATUS_CHANGED = "OrderStatusChanged"


@dataclass(frozen=True)
class TransitionEvent:
    """A committed change to one order.

    ``order`` is the snapshot as persisted by the commit that produced the
    event; handlers must not write it back.
    """

    event_type: str
    order: Order
    from_status: OrderStatus | None
    to_status: OrderStatus
    actor_id: str
    actor_role: str
    occurred_at: datetime
    reason: str | None = None
    event_id: str = field(default_factory=lambda: str(uuid4()))

    @property
    def order_id(self) -> str:
        return self.order.id


EventHandler = Callable[[TransitionEvent], None]


class EventBus:
    """Post-commit fan-out of order events.

    With ``workers=0`` handlers run inline on the publishing thread, otherwise
    on a shared thread pool. A failing handler is logged and never reaches the
    publisher or the other handlers.
    """

    def __init__(self, workers: int = 0):
        self._handlers: list[EventHandler] = []
        self._lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        if workers > 0:
            self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="order-events")

    def subscribe(self, handler: EventHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def publish(self, event: TransitionEvent) -> None:
        with self._lock:
            handlers = list(self._handlers)
            executor = self._executor
        for handler in handlers:
            if executor is not None:
                try:
                    executor.submit(self._run, handler, event)
                    continue
                except RuntimeError:
                    # The pool shut down after we read it.
                    executor = None
            self._run(handler, event)

    @staticmethod
    def _run(handler: EventHandler, event: TransitionEvent) -> None:
        try:
            handler(event)
        except Exception:
            logger.exception(
                "event handler %s failed: event=%s order=%s to=%s",
                getattr(handler, "__qualname__", repr(handler)),
                event.event_id,
                event.order_id,
                event.to_status.value,
            )

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executor = self._executor
            # Late publishers fall back to inline delivery.
            self._executor = None
        if executor is not None:
            executor.shutdown(wait=wait)
