from __future__ import annotations

from datetime import datetime, timezone

from fastapi import Request

from orderflow.orders.service import OrderService


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def get_order_service(request: Request) -> OrderService:
    return request.app.state.order_service
