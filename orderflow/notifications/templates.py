from __future__ import annotations

import json
from typing import Any

from orderflow.notifications.channels import EmailMessage
from orderflow.orders.aggregates import Order
from orderflow.orders.commands import format_delivery_time_slot
from orderflow.orders.status import OrderStatus

STATUS_LABELS = {
    OrderStatus.PENDING: "awaiting payment",
    OrderStatus.PAID: "paid",
    OrderStatus.PROCESSING: "being prepared",
    OrderStatus.SHIPPED: "on its way",
    OrderStatus.DELIVERED: "delivered",
    OrderStatus.CANCELLATION_REQUESTED: "cancellation requested",
    OrderStatus.CANCELLED: "cancelled",
    OrderStatus.EXPIRED: "expired",
    OrderStatus.FAILED: "failed",
}

# Base64 QR images would swamp a plain-text mail.
MAX_EMBEDDED_VALUE_LENGTH = 80


def _money(amount: int, currency: str) -> str:
    return f"{amount:,} {currency}"


def _item_lines(order: Order) -> str:
    return "\n".join(
        f"  {item.product_name} x{item.quantity} @ {_money(item.unit_price, order.currency)}"
        f" = {_money(item.line_amount, order.currency)}"
        for item in order.items
    )


def _delivery_lines(order: Order) -> str:
    delivery = order.delivery
    lines = []
    if delivery.delivery_date:
        lines.append(f"Delivery date: {delivery.delivery_date.isoformat()}")
    if delivery.time_slot:
        lines.append(f"Delivery time: {format_delivery_time_slot(delivery.time_slot)}")
    if delivery.address:
        lines.append("Address: " + ", ".join(str(value) for value in delivery.address.values() if value))
    return "\n".join(lines)


def payment_receipt(order: Order) -> EmailMessage:
    lines = [
        f"Thank you! We received payment for order #{order.order_number}.",
        "",
        _item_lines(order),
        f"Total: {_money(order.total_amount, order.currency)}",
    ]
    if order.payment_method:
        lines.append(f"Payment method: {order.payment_method}")
    delivery = _delivery_lines(order)
    if delivery:
        lines.extend(["", delivery])
    return EmailMessage(
        to=order.delivery.email or "",
        subject=f"Order #{order.order_number} confirmed",
        body="\n".join(lines) + "\n",
    )


def format_receipt_payload(payload: Any) -> str:
    """Render a receipt response or error verbatim, with oversized values elided."""
    if not isinstance(payload, dict):
        return str(payload)
    if not payload:
        return "(empty response from receipt service)"
    copy = {}
    for key, value in payload.items():
        if isinstance(value, str) and len(value) > MAX_EMBEDDED_VALUE_LENGTH and "qr" in key:
            value = f"[{len(value)} chars]"
        copy[key] = value
    try:
        return json.dumps(copy, indent=2, sort_keys=True, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(payload)


def fiscal_receipt(order: Order, result: dict[str, Any]) -> EmailMessage:
    lines = [f"Fiscal receipt for order #{order.order_number}", ""]
    if "error" in result:
        lines.append("The receipt could not be issued automatically. Our staff will follow up.")
    else:
        lines.extend(
            [
                f"Receipt id: {result.get('receipt_id') or 'n/a'}",
                f"Receipt number: {result.get('receipt_number') or 'n/a'}",
                f"Lottery: {result.get('lottery') or 'n/a'}",
                f"Amount: {_money(result['amount'], order.currency) if result.get('amount') is not None else 'n/a'}",
            ]
        )
        if result.get("receipt_url"):
            lines.append(f"View receipt: {result['receipt_url']}")
        if result.get("qr_data"):
            lines.append(f"QR: {result['qr_data']}")
    lines.extend(["", "Receipt service response:", format_receipt_payload(result.get("raw", result))])
    return EmailMessage(
        to=order.delivery.email or "",
        subject=f"Fiscal receipt for order #{order.order_number}",
        body="\n".join(lines) + "\n",
    )


def cancellation_requested_alert(order: Order, recipient: str) -> EmailMessage:
    previous = order.status_before_cancellation.value if order.status_before_cancellation else "n/a"
    return EmailMessage(
        to=recipient,
        subject=f"Cancellation requested for order #{order.order_number}",
        body=(
            f"Order #{order.order_number} ({order.id}) has a cancellation request.\n"
            f"Requested by: {order.cancellation_requested_by}\n"
            f"Previous status: {previous}\n"
            f"Reason: {order.cancellation_reason or 'not given'}\n"
            f"Total: {_money(order.total_amount, order.currency)}\n"
        ),
    )


def cancellation_notice(order: Order) -> EmailMessage:
    body = f"Your order #{order.order_number} has been cancelled.\n"
    if order.cancellation_reason:
        body += f"Reason: {order.cancellation_reason}\n"
    if order.payment_status.value == "PAID":
        body += "Your payment will be refunded to the original payment method.\n"
    return EmailMessage(
        to=order.delivery.email or "",
        subject=f"Order #{order.order_number} cancelled",
        body=body,
    )


def status_notice(order: Order) -> EmailMessage:
    label = STATUS_LABELS.get(order.status, order.status.value.lower())
    body = f"Your order #{order.order_number} is {label}.\n"
    delivery = _delivery_lines(order)
    if delivery and order.status is OrderStatus.SHIPPED:
        body += "\n" + delivery + "\n"
    return EmailMessage(
        to=order.delivery.email or "",
        subject=f"Order #{order.order_number} is {label}",
        body=body,
    )
