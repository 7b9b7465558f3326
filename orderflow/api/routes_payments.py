from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from orderflow.api.utils import get_order_service
from orderflow.core.security import Actor, get_actor, require_roles
from orderflow.orders.service import OrderService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


class PaymentWebhookRequest(BaseModel):
    order_id: str = Field(min_length=1)
    outcome: Literal["paid", "failed"]
    payment_method: str | None = Field(default=None, max_length=32)
    reason: str | None = Field(default=None, max_length=1000)


@router.post("/payments/webhook")
def payment_webhook(
    request: PaymentWebhookRequest,
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_order_service),
):
    require_roles(actor, {"system", "admin"}, detail="payment callbacks require system role")
    logger.info("payment webhook: order=%s outcome=%s", request.order_id, request.outcome)

    if request.outcome == "paid":
        order = service.mark_paid(request.order_id, payment_method=request.payment_method, actor=actor)
    else:
        order = service.mark_payment_failed(request.order_id, reason=request.reason, actor=actor)
    return order.to_dict()
