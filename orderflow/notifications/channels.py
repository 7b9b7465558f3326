from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import uuid4

import httpx

from orderflow.core.config import Settings, get_settings
from orderflow.orders.aggregates import Order
from orderflow.orders.errors import ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    body: str


@dataclass
class FiscalReceipt:
    receipt_id: str | None
    receipt_number: str | None = None
    lottery: str | None = None
    amount: int | None = None
    receipt_url: str | None = None
    qr_data: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "receipt_id": self.receipt_id,
            "receipt_number": self.receipt_number,
            "lottery": self.lottery,
            "amount": self.amount,
            "receipt_url": self.receipt_url,
            "qr_data": self.qr_data,
        }


class EmailSender(Protocol):
    backend: str

    def send(self, message: EmailMessage) -> None:
        ...


class FiscalReceiptClient(Protocol):
    backend: str

    def issue(self, order: Order) -> FiscalReceipt:
        ...


class LogEmailSender:
    """Keeps outgoing mail in memory and in the log instead of delivering it."""

    backend = "log"

    def __init__(self):
        self.sent: list[EmailMessage] = []
        self._lock = threading.Lock()

    def send(self, message: EmailMessage) -> None:
        with self._lock:
            self.sent.append(message)
        logger.info("email (not delivered): to=%s subject=%s", message.to, message.subject)


class HttpEmailSender:
    backend = "http"

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.url = self.settings.email_api_url
        self.timeout = max(1, self.settings.email_timeout_seconds)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.settings.email_api_key:
            headers["Authorization"] = f"Bearer {self.settings.email_api_key}"
        return headers

    def send(self, message: EmailMessage) -> None:
        payload = {
            "from": self.settings.email_sender,
            "to": message.to,
            "subject": message.subject,
            "text": message.body,
        }
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.url, headers=self._headers(), json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalServiceError("email", str(exc)) from exc


def _first(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


class HttpFiscalReceiptClient:
    backend = "http"

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.url = self.settings.receipt_api_url
        self.timeout = max(1, self.settings.receipt_timeout_seconds)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.settings.receipt_api_key:
            headers["Authorization"] = f"Bearer {self.settings.receipt_api_key}"
        return headers

    @staticmethod
    def _request_body(order: Order) -> dict[str, Any]:
        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "receiver_type": "CITIZEN",
            "amount": order.total_amount,
            "currency": order.currency,
            "lines": [
                {
                    "product_id": item.product_id,
                    "name": item.product_name,
                    "unit_price": item.unit_price,
                    "quantity": item.quantity,
                    "amount": item.line_amount,
                }
                for item in order.items
            ],
        }

    def issue(self, order: Order) -> FiscalReceipt:
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.url, headers=self._headers(), json=self._request_body(order))
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalServiceError("fiscal_receipt", str(exc)) from exc

        # Some deployments answer 200 with an empty body when the receipt is queued.
        try:
            payload = response.json() if response.content else {}
        except ValueError as exc:
            raise ExternalServiceError("fiscal_receipt", f"invalid JSON response: {response.text[:200]}") from exc
        if not isinstance(payload, dict):
            payload = {"result": payload}

        amount = _first(payload, "amount")
        try:
            amount = int(amount) if amount is not None else None
        except (TypeError, ValueError):
            amount = None
        return FiscalReceipt(
            receipt_id=_first(payload, "receipt_id", "ebarimt_id", "id"),
            receipt_number=_first(payload, "receipt_number", "ebarimt_receipt_id"),
            lottery=_first(payload, "lottery", "ebarimt_lottery"),
            amount=amount,
            receipt_url=_first(payload, "receipt_url", "url"),
            qr_data=_first(payload, "qr_data", "qr_image", "ebarimt_qr_image"),
            raw=payload,
        )


class FakeFiscalReceiptClient:
    backend = "fake"

    def __init__(self):
        self.issued: list[str] = []

    def issue(self, order: Order) -> FiscalReceipt:
        self.issued.append(order.id)
        receipt_id = f"fake-{uuid4().hex[:12]}"
        return FiscalReceipt(
            receipt_id=receipt_id,
            receipt_number=order.order_number,
            amount=order.total_amount,
            receipt_url=f"https://receipts.invalid/{receipt_id}",
            raw={"backend": self.backend, "order_id": order.id},
        )


def build_email_sender(settings: Settings | None = None) -> EmailSender:
    settings = settings or get_settings()
    if settings.email_backend == "http":
        return HttpEmailSender(settings)
    if settings.email_backend != "log":
        logger.warning("unknown email backend %r, falling back to log", settings.email_backend)
    return LogEmailSender()


def build_fiscal_receipt_client(settings: Settings | None = None) -> FiscalReceiptClient:
    settings = settings or get_settings()
    if settings.receipt_backend == "http":
        return HttpFiscalReceiptClient(settings)
    if settings.receipt_backend != "fake":
        logger.warning("unknown receipt backend %r, falling back to fake", settings.receipt_backend)
    return FakeFiscalReceiptClient()
