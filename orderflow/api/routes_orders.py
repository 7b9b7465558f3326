from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from orderflow.api.utils import get_order_service
from orderflow.core.security import Actor, get_actor
from orderflow.orders.commands import OrderFilter
from orderflow.orders.service import OrderService
from orderflow.orders.status import OrderStatus

router = APIRouter(tags=["orders"])


class CreateOrderRequest(BaseModel):
    customer_id: str | None = None
    items: list[dict[str, Any]] = Field(default_factory=list)
    delivery: dict[str, Any] | None = None


class CancellationRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


@router.post("/orders", status_code=201)
def create_order(
    request: CreateOrderRequest,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_order_service),
):
    if actor.role == "customer":
        if request.customer_id and request.customer_id != actor.id:
            raise HTTPException(status_code=403, detail="customers can only order for themselves")
        customer_id = actor.id
    else:
        if not request.customer_id:
            raise HTTPException(status_code=422, detail="customer_id is required")
        customer_id = request.customer_id

    order = service.create_order(customer_id, request.items, request.delivery, actor=actor)
    return order.to_dict()


@router.get("/orders")
def list_orders(
    status: OrderStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_order_service),
):
    orders = service.get_all_orders(OrderFilter(status=status, limit=limit, offset=offset), actor=actor)
    return {"count": len(orders), "orders": [order.to_dict() for order in orders]}


@router.get("/orders/{order_id}")
def get_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_order_service),
):
    return service.get_order_by_id(order_id, actor).to_dict()


@router.get("/orders/{order_id}/timeline")
def get_order_timeline(
    order_id: str,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_order_service),
):
    activities = service.get_order_timeline(order_id, actor)
    return {"order_id": order_id, "activities": [activity.to_dict() for activity in activities]}


@router.post("/orders/{order_id}/cancellation")
def request_cancellation(
    order_id: str,
    request: CancellationRequest,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_order_service),
):
    return service.request_cancellation(order_id, actor, request.reason).to_dict()
