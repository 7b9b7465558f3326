from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from orderflow.orders.status import OrderStatus, PaymentStatus


def _iso(value: datetime | date | None) -> str | None:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class OrderItem:
    """Line snapshot taken when the order was placed.

    Later catalog edits never reach a placed order; ``product_id`` is only a
    back-reference.
    """

    product_id: str
    product_name: str
    unit_price: int
    quantity: int

    @property
    def line_amount(self) -> int:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class DeliveryInfo:
    delivery_date: date | None = None
    time_slot: str | None = None
    address: dict[str, Any] = field(default_factory=dict)
    email: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class Order:
    id: str
    order_number: str
    customer_id: str
    status: OrderStatus
    items: tuple[OrderItem, ...]
    currency: str
    payment_status: PaymentStatus
    payment_method: str | None
    delivery: DeliveryInfo
    created_at: datetime
    updated_at: datetime
    expires_at: datetime | None
    cancellation_requested_at: datetime | None = None
    cancellation_reason: str | None = None
    cancellation_requested_by: str | None = None
    status_before_cancellation: OrderStatus | None = None

    @property
    def total_amount(self) -> int:
        return sum(item.line_amount for item in self.items)

    def is_expired_at(self, now: datetime) -> bool:
        return self.status is OrderStatus.PENDING and self.expires_at is not None and self.expires_at <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "status": self.status.value,
            "items": [
                {
                    "product_id": item.product_id,
                    "product_name": item.product_name,
                    "unit_price": item.unit_price,
                    "quantity": item.quantity,
                    "line_amount": item.line_amount,
                }
                for item in self.items
            ],
            "total_amount": self.total_amount,
            "currency": self.currency,
            "payment_status": self.payment_status.value,
            "payment_method": self.payment_method,
            "delivery": {
                "delivery_date": _iso(self.delivery.delivery_date),
                "time_slot": self.delivery.time_slot,
                "address": self.delivery.address,
                "email": self.delivery.email,
                "phone": self.delivery.phone,
            },
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "expires_at": _iso(self.expires_at) if self.status is OrderStatus.PENDING else None,
            "cancellation": {
                "requested_at": _iso(self.cancellation_requested_at),
                "reason": self.cancellation_reason,
                "requested_by": self.cancellation_requested_by,
                "previous_status": self.status_before_cancellation.value
                if self.status_before_cancellation
                else None,
            },
        }


@dataclass(frozen=True)
class OrderActivity:
    order_id: str
    type: str
    from_value: str | None
    to_value: str | None
    description: str | None
    performed_by: str | None
    performed_by_role: str | None
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "from": self.from_value,
            "to": self.to_value,
            "description": self.description,
            "performed_by": {"id": self.performed_by, "role": self.performed_by_role},
            "at": _iso(self.created_at),
        }
