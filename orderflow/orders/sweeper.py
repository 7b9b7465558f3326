from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

from orderflow.core.security import Actor, system_actor
from orderflow.orders.errors import ConcurrencyConflictError, InvalidStateTransitionError
from orderflow.orders.state_machine import Clock, OrderStateMachine, utc_now
from orderflow.orders.status import OrderStatus
from orderflow.orders.store import OrderStore

logger = logging.getLogger(__name__)


class ExpirationSweeper:
    """Moves unpaid Pending orders past their ``expires_at`` to Expired.

    Each candidate goes through the state machine with ``expected_status``
    set to Pending, so an order paid between the query and the update is left
    alone.
    """

    def __init__(
        self,
        store: OrderStore,
        machine: OrderStateMachine,
        *,
        clock: Clock | None = None,
        batch_size: int = 500,
        actor: Actor | None = None,
    ):
        self.store = store
        self.machine = machine
        self.clock = clock or utc_now
        self.batch_size = batch_size
        self.actor = actor

    def run_once(self) -> int:
        actor = self.actor or system_actor()
        now = self.clock()
        expired = 0
        seen: set[str] = set()
        while True:
            batch = self.store.find_expired_pending(now, self.batch_size)
            candidates = [order_id for order_id in batch if order_id not in seen]
            if not candidates:
                break
            for order_id in candidates:
                seen.add(order_id)
                try:
                    self.machine.advance_status(
                        order_id,
                        OrderStatus.EXPIRED,
                        actor,
                        reason="Payment window elapsed",
                        expected_status=OrderStatus.PENDING,
                    )
                except (ConcurrencyConflictError, InvalidStateTransitionError) as exc:
                    logger.debug("skipping expiry of order %s: %s", order_id, exc)
                    continue
                expired += 1

        if expired:
            logger.info("expired %s pending order(s)", expired)
        return expired


class Scheduler(Protocol):
    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def run_once(self) -> None:
        ...


class IntervalScheduler:
    """Runs ``task`` every ``interval_seconds`` on a daemon thread."""

    def __init__(self, task: Callable[[], object], interval_seconds: float, name: str = "order-sweeper"):
        self.task = task
        self.interval_seconds = interval_seconds
        self.name = name
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info("%s started: interval=%ss", self.name, self.interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout=timeout)
            logger.info("%s stopped", self.name)

    def run_once(self) -> None:
        try:
            self.task()
        except Exception:
            logger.exception("%s run failed", self.name)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.run_once()
