from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from orderflow.orders.status import OrderStatus

# Delivery windows offered at checkout, "HH-HH" in local time.
DELIVERY_TIME_SLOTS = {
    "MORNING": "10-14",
    "AFTERNOON": "14-18",
    "EVENING": "18-21",
    "NIGHT": "21-00",
}
VALID_DELIVERY_TIME_SLOTS = frozenset(DELIVERY_TIME_SLOTS.values())


def format_delivery_time_slot(time_slot: str | None) -> str:
    if not time_slot or time_slot not in VALID_DELIVERY_TIME_SLOTS:
        return time_slot or ""
    start, end = time_slot.split("-")
    return f"{start}:00 - {end}:00"


class OrderItemInput(BaseModel):
    product_id: str = Field(min_length=1, max_length=64)
    name: str | None = Field(default=None, max_length=255)
    unit_price: int = Field(gt=0, description="minor currency units")
    quantity: int = Field(gt=0)

    @field_validator("product_id", mode="before")
    @classmethod
    def _stringify_product_id(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @property
    def product_name(self) -> str:
        return self.name or f"Product #{self.product_id}"


class DeliveryInfoInput(BaseModel):
    delivery_date: date | None = None
    time_slot: str | None = None
    address: dict[str, Any] = Field(default_factory=dict)
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=32)

    @field_validator("time_slot")
    @classmethod
    def _known_slot(cls, value: str | None) -> str | None:
        if value is not None and value not in VALID_DELIVERY_TIME_SLOTS:
            raise ValueError(
                f"unsupported delivery time slot: {value}; expected one of "
                + ", ".join(sorted(VALID_DELIVERY_TIME_SLOTS))
            )
        return value


class CreateOrderCommand(BaseModel):
    customer_id: str = Field(min_length=1, max_length=128)
    items: list[OrderItemInput] = Field(min_length=1)
    delivery: DeliveryInfoInput = Field(default_factory=DeliveryInfoInput)


class OrderFilter(BaseModel):
    status: OrderStatus | None = None
    customer_id: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)
