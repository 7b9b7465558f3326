from __future__ import annotations

import json

import httpx
import pytest

from orderflow.notifications import channels
from orderflow.notifications.channels import (
    FakeFiscalReceiptClient,
    FiscalReceipt,
    HttpEmailSender,
    HttpFiscalReceiptClient,
    LogEmailSender,
)
from orderflow.notifications.dispatcher import NotificationDispatcher
from orderflow.notifications.log import NotificationLogStore
from orderflow.orders.errors import ExternalServiceError
from orderflow.orders.events import ORDER_STATUS_CHANGED, TransitionEvent
from orderflow.orders.service import build_order_service
from orderflow.orders.status import OrderStatus
from tests.conftest import DELIVERY, START


class FailingEmailSender:
    backend = "failing"

    def __init__(self):
        self.attempts = 0

    def send(self, message):
        self.attempts += 1
        raise ExternalServiceError("email", "smtp relay refused connection")


class FailingReceiptClient:
    backend = "failing"

    def issue(self, order):
        raise ExternalServiceError("fiscal_receipt", '{"error": "POS_NOT_REGISTERED"}')


def _kinds(service, order_id, status=None):
    return [record.kind for record in service.notification_log.query(order_id=order_id, status=status)]


def test_paid_order_gets_receipt_and_fiscal_receipt(service, place_order, email_sender, receipt_client):
    order = place_order()
    service.mark_paid(order.id, payment_method="qpay")

    subjects = [message.subject for message in email_sender.sent]
    assert subjects == [
        f"Order #{order.order_number} confirmed",
        f"Fiscal receipt for order #{order.order_number}",
    ]
    assert receipt_client.issued == [order.id]
    assert "Payment method: qpay" in email_sender.sent[0].body
    assert "Receipt id: fake-" in email_sender.sent[1].body
    assert sorted(_kinds(service, order.id, "sent")) == ["fiscal_receipt", "fiscal_receipt_email", "payment_receipt"]
    assert service.list_failed_notifications() == []


def test_receipt_failure_is_embedded_verbatim_and_logged(
    service_settings, clock, email_sender, inventory
):
    service = build_order_service(
        service_settings,
        email_sender=email_sender,
        receipt_client=FailingReceiptClient(),
        inventory=inventory,
        clock=clock,
    )
    order = service.create_order("cust-1", [{"product_id": "p1", "unit_price": 100, "quantity": 1}], DELIVERY)

    paid = service.mark_paid(order.id)

    assert paid.status is OrderStatus.PAID
    assert service.get_order_by_id(order.id).status is OrderStatus.PAID
    follow_up = email_sender.sent[-1]
    assert "could not be issued" in follow_up.body
    assert "POS_NOT_REGISTERED" in follow_up.body
    failed = service.list_failed_notifications()
    assert [(r.kind, r.order_id) for r in failed] == [("fiscal_receipt", order.id)]
    assert "POS_NOT_REGISTERED" in failed[0].error
    service.stop()


def test_email_failure_never_rolls_back_transition(service_settings, clock, receipt_client, inventory):
    sender = FailingEmailSender()
    service = build_order_service(
        service_settings,
        email_sender=sender,
        receipt_client=receipt_client,
        inventory=inventory,
        clock=clock,
    )
    order = service.create_order("cust-1", [{"product_id": "p1", "unit_price": 100, "quantity": 1}], DELIVERY)

    paid = service.mark_paid(order.id)

    assert paid.status is OrderStatus.PAID
    assert service.get_order_by_id(order.id).status is OrderStatus.PAID
    # Each send is tried exactly once.
    assert sender.attempts == 2
    failed = service.list_failed_notifications()
    assert sorted(r.kind for r in failed) == ["fiscal_receipt_email", "payment_receipt"]
    assert all(r.error == "email: smtp relay refused connection" for r in failed)
    assert all(r.recipient == "buyer@example.com" for r in failed)
    service.stop()


def test_order_without_email_is_skipped(service, place_order, email_sender):
    order = place_order(delivery={"time_slot": "10-14"})
    service.mark_paid(order.id)

    assert email_sender.sent == []
    assert sorted(_kinds(service, order.id, "skipped")) == ["fiscal_receipt_email", "payment_receipt"]


def test_cancellation_request_alerts_staff(service, place_order, customer, email_sender):
    order = place_order()
    service.request_cancellation(order.id, customer, "ordered twice")

    assert len(email_sender.sent) == 1
    alert = email_sender.sent[0]
    assert alert.to == "ops@example.com"
    assert "ordered twice" in alert.body
    assert "Previous status: PENDING" in alert.body


def test_shipping_and_delivery_notices(service, order_in_status, admin, email_sender):
    order = order_in_status("SHIPPED")
    service.update_order_status(order.id, OrderStatus.DELIVERED, admin)

    subjects = [message.subject for message in email_sender.sent]
    assert f"Order #{order.order_number} is on its way" in subjects
    assert f"Order #{order.order_number} is delivered" in subjects
    shipped = next(m for m in email_sender.sent if m.subject.endswith("on its way"))
    assert "Delivery time: 14:00 - 18:00" in shipped.body


def _mock_client(monkeypatch, handler):
    real_client = httpx.Client

    def factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return real_client(*args, **kwargs)

    monkeypatch.setattr(channels.httpx, "Client", factory)


def test_http_receipt_client_normalizes_provider_fields(monkeypatch, service_settings, place_order):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(
            200,
            json={
                "ebarimt_id": "EB-1",
                "ebarimt_receipt_id": "R-77",
                "ebarimt_lottery": "AA 123",
                "amount": "250",
                "url": "https://ebarimt.example/EB-1",
                "qr_image": "data:image/png;base64," + "A" * 200,
            },
        )

    _mock_client(monkeypatch, handler)
    order = place_order()
    settings = service_settings.model_copy(update={"receipt_api_key": "secret"})

    receipt = HttpFiscalReceiptClient(settings).issue(order)

    assert isinstance(receipt, FiscalReceipt)
    assert receipt.receipt_id == "EB-1"
    assert receipt.receipt_number == "R-77"
    assert receipt.lottery == "AA 123"
    assert receipt.amount == 250
    assert receipt.receipt_url == "https://ebarimt.example/EB-1"
    assert receipt.qr_data.startswith("data:image/png")
    assert seen["auth"] == "Bearer secret"
    assert seen["body"]["amount"] == 250
    assert [line["amount"] for line in seen["body"]["lines"]] == [200, 50]


def test_http_receipt_client_handles_empty_body_and_errors(monkeypatch, service_settings, place_order):
    order = place_order()
    responses = iter([httpx.Response(200), httpx.Response(503, text="maintenance")])
    _mock_client(monkeypatch, lambda request: next(responses))
    client = HttpFiscalReceiptClient(service_settings)

    empty = client.issue(order)
    assert empty.receipt_id is None
    assert empty.raw == {}

    with pytest.raises(ExternalServiceError) as excinfo:
        client.issue(order)
    assert excinfo.value.service == "fiscal_receipt"


def test_http_email_sender_posts_message(monkeypatch, service_settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(json.loads(request.content))
        return httpx.Response(202, json={"queued": True})

    _mock_client(monkeypatch, handler)
    sender = HttpEmailSender(service_settings)
    sender.send(channels.EmailMessage(to="buyer@example.com", subject="Hi", body="Hello"))

    assert seen == {
        "from": service_settings.email_sender,
        "to": "buyer@example.com",
        "subject": "Hi",
        "text": "Hello",
    }


def test_backend_selection_falls_back_to_local(service_settings):
    assert channels.build_email_sender(service_settings).backend == "log"
    assert channels.build_fiscal_receipt_client(service_settings).backend == "fake"
    http_settings = service_settings.model_copy(update={"email_backend": "http", "receipt_backend": "http"})
    assert channels.build_email_sender(http_settings).backend == "http"
    assert channels.build_fiscal_receipt_client(http_settings).backend == "http"


def test_rejected_cancellation_on_paid_order_sends_no_new_receipt(
    service, order_in_status, customer, admin, email_sender, receipt_client
):
    order = order_in_status("PAID")
    issued = list(receipt_client.issued)
    service.request_cancellation(order.id, customer, "changed my mind")
    sent_before = len(email_sender.sent)

    restored = service.reject_cancellation(order.id, admin)

    assert restored.status is OrderStatus.PAID
    assert receipt_client.issued == issued
    assert email_sender.sent[sent_before:] == []
    assert sorted(_kinds(service, order.id, "sent")).count("fiscal_receipt") == 1


def test_dispatcher_stamps_log_rows_with_wall_clock(place_order):
    order = place_order()
    log_store = NotificationLogStore()
    dispatcher = NotificationDispatcher(LogEmailSender(), FakeFiscalReceiptClient(), log_store)

    dispatcher(
        TransitionEvent(
            event_type=ORDER_STATUS_CHANGED,
            order=order,
            from_status=OrderStatus.PROCESSING,
            to_status=OrderStatus.SHIPPED,
            actor_id="admin-001",
            actor_role="admin",
            occurred_at=START,
        )
    )

    [record] = log_store.query(order_id=order.id)
    assert record.kind == "status_shipped"
    assert record.created_at.tzinfo is not None
    assert record.created_at > START
