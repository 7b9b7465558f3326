from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from orderflow.api.utils import get_order_service, parse_timestamp
from orderflow.core.security import Actor, get_actor, require_roles
from orderflow.orders.commands import OrderFilter
from orderflow.orders.service import OrderService
from orderflow.orders.status import OrderStatus

router = APIRouter(prefix="/admin", tags=["admin"])


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    reason: str | None = Field(default=None, max_length=1000)


def _require_admin(actor: Actor) -> None:
    require_roles(actor, {"admin"}, detail="admin role required")


@router.post("/orders/{order_id}/cancellation/confirm")
def confirm_cancellation(
    order_id: str,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_order_service),
):
    _require_admin(actor)
    return service.confirm_cancellation(order_id, actor).to_dict()


@router.post("/orders/{order_id}/cancellation/reject")
def reject_cancellation(
    order_id: str,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_order_service),
):
    _require_admin(actor)
    return service.reject_cancellation(order_id, actor).to_dict()


@router.post("/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    request: StatusUpdateRequest,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_order_service),
):
    _require_admin(actor)
    return service.update_order_status(order_id, request.status, actor, reason=request.reason).to_dict()


@router.post("/orders/expire")
def expire_pending_orders(
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_order_service),
):
    require_roles(actor, {"admin", "system"}, detail="admin or system role required")
    return service.cancel_expired_pending_orders()


@router.get("/orders")
def list_all_orders(
    status: OrderStatus | None = Query(default=None),
    customer_id: str | None = Query(default=None),
    created_from: str | None = Query(default=None, description="ISO timestamp, inclusive"),
    created_to: str | None = Query(default=None, description="ISO timestamp, exclusive"),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_order_service),
):
    _require_admin(actor)
    try:
        order_filter = OrderFilter(
            status=status,
            customer_id=customer_id,
            created_from=parse_timestamp(created_from) if created_from else None,
            created_to=parse_timestamp(created_to) if created_to else None,
            limit=limit,
            offset=offset,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    orders = service.get_all_orders(order_filter)
    return {"count": len(orders), "orders": [order.to_dict() for order in orders]}


@router.get("/notifications/failed")
def list_failed_notifications(
    limit: int = Query(default=100, ge=1, le=1000),
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_order_service),
):
    _require_admin(actor)
    records = service.list_failed_notifications(limit=limit)
    return {"count": len(records), "notifications": [record.to_dict() for record in records]}
