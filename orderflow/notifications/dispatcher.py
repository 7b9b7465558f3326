from __future__ import annotations

import logging
from typing import Any

from orderflow.notifications import templates
from orderflow.notifications.channels import EmailMessage, EmailSender, FiscalReceiptClient
from orderflow.notifications.log import FAILED, SENT, SKIPPED, NotificationLogStore
from orderflow.orders.events import ORDER_STATUS_CHANGED, TransitionEvent
from orderflow.orders.state_machine import Clock, utc_now
from orderflow.orders.status import OrderStatus

logger = logging.getLogger(__name__)

STATUS_NOTICES = frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED})


class NotificationDispatcher:
    """Turns committed order transitions into customer and staff messages.

    Runs as an event bus subscriber, after the transition is durable. Every
    send is attempted once and its outcome written to the notification log;
    a failed send never affects the order or the other sends.
    """

    def __init__(
        self,
        email_sender: EmailSender,
        receipt_client: FiscalReceiptClient,
        log_store: NotificationLogStore,
        *,
        admin_email: str | None = None,
        clock: Clock | None = None,
    ):
        self.email_sender = email_sender
        self.receipt_client = receipt_client
        self.log_store = log_store
        self.admin_email = admin_email
        self.clock = clock or utc_now

    def __call__(self, event: TransitionEvent) -> None:
        self.dispatch(event)

    def dispatch(self, event: TransitionEvent) -> None:
        if event.event_type != ORDER_STATUS_CHANGED:
            return
        status = event.to_status
        if status is OrderStatus.PAID:
            # A rejected cancellation also lands in PAID; only a payment issues receipts.
            if event.from_status is OrderStatus.PENDING:
                self._on_paid(event)
        elif status is OrderStatus.CANCELLATION_REQUESTED:
            if self.admin_email:
                message = templates.cancellation_requested_alert(event.order, self.admin_email)
                self._send(event, "cancellation_requested_alert", message)
        elif status is OrderStatus.CANCELLED:
            self._send(event, "cancellation_notice", templates.cancellation_notice(event.order))
        elif status in STATUS_NOTICES:
            self._send(event, f"status_{status.value.lower()}", templates.status_notice(event.order))

    def _on_paid(self, event: TransitionEvent) -> None:
        order = event.order
        self._send(event, "payment_receipt", templates.payment_receipt(order))

        try:
            receipt = self.receipt_client.issue(order)
        except Exception as exc:
            logger.exception("fiscal receipt failed for order %s", order.id)
            result: dict[str, Any] = {"error": {"type": type(exc).__name__, "message": str(exc)}}
            self._record(event, "fiscal_receipt", None, FAILED, error=str(exc), detail=result)
        else:
            result = {**receipt.to_dict(), "raw": receipt.raw}
            logger.info("fiscal receipt issued for order %s: %s", order.id, receipt.receipt_id)
            self._record(event, "fiscal_receipt", None, SENT, detail=receipt.to_dict())

        # Sent on failure too, with the provider response embedded.
        self._send(event, "fiscal_receipt_email", templates.fiscal_receipt(order, result))

    def _send(self, event: TransitionEvent, kind: str, message: EmailMessage) -> None:
        if not message.to:
            logger.info("no contact email for order %s, skipping %s", event.order_id, kind)
            self._record(event, kind, None, SKIPPED, error="no recipient")
            return
        try:
            self.email_sender.send(message)
        except Exception as exc:
            logger.error(
                "notification %s failed for order %s to %s: %s",
                kind,
                event.order_id,
                message.to,
                exc,
            )
            self._record(event, kind, message.to, FAILED, error=str(exc), detail={"subject": message.subject})
            return
        self._record(event, kind, message.to, SENT, detail={"subject": message.subject})

    def _record(
        self,
        event: TransitionEvent,
        kind: str,
        recipient: str | None,
        status: str,
        *,
        error: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        try:
            self.log_store.record(
                event_id=event.event_id,
                order_id=event.order_id,
                kind=kind,
                recipient=recipient,
                status=status,
                error=error,
                detail=detail,
                created_at=self.clock(),
            )
        except Exception:
            logger.exception(
                "could not record %s notification %s for order %s",
                status,
                kind,
                event.order_id,
            )
