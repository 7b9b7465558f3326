from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import Select, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from orderflow.orders.aggregates import DeliveryInfo, Order, OrderActivity, OrderItem
from orderflow.orders.commands import OrderFilter
from orderflow.orders.status import OrderStatus, PaymentStatus
from orderflow.persistence import pg
from orderflow.persistence.models import OrderActivityModel, OrderItemModel, OrderModel

logger = logging.getLogger(__name__)

ORDER_NUMBER_ATTEMPTS = 5


class OrderStore(Protocol):
    def insert(self, order: Order, activity: OrderActivity) -> Order:
        ...

    def get(self, order_id: str) -> Order | None:
        ...

    def list_orders(self, order_filter: OrderFilter) -> list[Order]:
        ...

    def compare_and_set(
        self,
        order_id: str,
        expected_status: OrderStatus,
        changes: dict[str, Any],
        activity: OrderActivity,
    ) -> bool:
        ...

    def find_expired_pending(self, now: datetime, limit: int) -> list[str]:
        ...

    def timeline(self, order_id: str) -> list[OrderActivity]:
        ...


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _order_from_rows(row: OrderModel, item_rows: list[OrderItemModel]) -> Order:
    return Order(
        id=row.id,
        order_number=row.order_number,
        customer_id=row.customer_id,
        status=OrderStatus(row.status),
        items=tuple(
            OrderItem(
                product_id=item.product_id,
                product_name=item.product_name,
                unit_price=int(item.unit_price),
                quantity=int(item.quantity),
            )
            for item in sorted(item_rows, key=lambda item: item.position)
        ),
        currency=row.currency,
        payment_status=PaymentStatus(row.payment_status),
        payment_method=row.payment_method,
        delivery=DeliveryInfo(
            delivery_date=row.delivery_date,
            time_slot=row.delivery_time_slot,
            address=dict(row.delivery_address or {}),
            email=row.contact_email,
            phone=row.contact_phone,
        ),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        expires_at=as_utc(row.expires_at),
        cancellation_requested_at=as_utc(row.cancellation_requested_at),
        cancellation_reason=row.cancellation_reason,
        cancellation_requested_by=row.cancellation_requested_by,
        status_before_cancellation=OrderStatus(row.status_before_cancellation)
        if row.status_before_cancellation
        else None,
    )


def _activity_row(activity: OrderActivity) -> OrderActivityModel:
    return OrderActivityModel(
        order_id=activity.order_id,
        type=activity.type,
        from_value=activity.from_value,
        to_value=activity.to_value,
        description=activity.description,
        performed_by=activity.performed_by,
        performed_by_role=activity.performed_by_role,
        created_at=activity.created_at,
    )


class SqlAlchemyOrderStore:
    """Order persistence on top of the shared SQLAlchemy session factory.

    Every public method runs in its own transaction. ``compare_and_set`` is the
    only way a persisted order changes after insert: the status column acts as
    the version, so two writers racing from the same status cannot both win.
    """

    def __init__(self, session_factory: sessionmaker | None = None):
        self._session_factory = session_factory

    def _scope(self):
        return pg.session_scope(self._session_factory)

    def _load_items(self, session: Session, order_ids: list[str]) -> dict[str, list[OrderItemModel]]:
        grouped: dict[str, list[OrderItemModel]] = {order_id: [] for order_id in order_ids}
        if not order_ids:
            return grouped
        stmt = select(OrderItemModel).where(OrderItemModel.order_id.in_(order_ids))
        for item in session.scalars(stmt).all():
            grouped[item.order_id].append(item)
        return grouped

    def _next_order_number(self, session: Session, created_at: datetime) -> str:
        prefix = created_at.strftime("%y%m%d")
        # Orders are never deleted, so the day's count is also its last sequence.
        issued = session.scalar(
            select(func.count(OrderModel.id)).where(OrderModel.order_number.like(f"{prefix}%"))
        )
        return f"{prefix}{(issued or 0) + 1:03d}"

    def insert(self, order: Order, activity: OrderActivity) -> Order:
        attempt = 0
        while True:
            attempt += 1
            try:
                with self._scope() as session:
                    order_number = self._next_order_number(session, order.created_at)
                    stored = replace(order, order_number=order_number)
                    session.add(
                        OrderModel(
                            id=stored.id,
                            order_number=stored.order_number,
                            customer_id=stored.customer_id,
                            status=stored.status,
                            total_amount=stored.total_amount,
                            currency=stored.currency,
                            payment_status=stored.payment_status.value,
                            payment_method=stored.payment_method,
                            delivery_date=stored.delivery.delivery_date,
                            delivery_time_slot=stored.delivery.time_slot,
                            delivery_address=dict(stored.delivery.address),
                            contact_email=stored.delivery.email,
                            contact_phone=stored.delivery.phone,
                            created_at=stored.created_at,
                            updated_at=stored.updated_at,
                            expires_at=stored.expires_at,
                        )
                    )
                    # Items reference the order row, so it has to exist first.
                    session.flush()
                    for position, item in enumerate(stored.items):
                        session.add(
                            OrderItemModel(
                                order_id=stored.id,
                                position=position,
                                product_id=item.product_id,
                                product_name=item.product_name,
                                unit_price=item.unit_price,
                                quantity=item.quantity,
                                line_amount=item.line_amount,
                            )
                        )
                    session.add(_activity_row(activity))
                return stored
            except IntegrityError:
                if attempt >= ORDER_NUMBER_ATTEMPTS:
                    raise
                logger.warning(
                    "order number collision for order %s, retrying (%s/%s)",
                    order.id,
                    attempt,
                    ORDER_NUMBER_ATTEMPTS,
                )

    def get(self, order_id: str) -> Order | None:
        with self._scope() as session:
            row = session.get(OrderModel, order_id)
            if row is None:
                return None
            items = self._load_items(session, [row.id])
            return _order_from_rows(row, items[row.id])

    def list_orders(self, order_filter: OrderFilter) -> list[Order]:
        stmt: Select[tuple[OrderModel]] = select(OrderModel)
        if order_filter.status is not None:
            stmt = stmt.where(OrderModel.status == order_filter.status)
        if order_filter.customer_id:
            stmt = stmt.where(OrderModel.customer_id == order_filter.customer_id)
        if order_filter.created_from is not None:
            stmt = stmt.where(OrderModel.created_at >= order_filter.created_from)
        if order_filter.created_to is not None:
            stmt = stmt.where(OrderModel.created_at < order_filter.created_to)
        stmt = (
            stmt.order_by(OrderModel.created_at.desc(), OrderModel.order_number.desc())
            .offset(order_filter.offset)
            .limit(order_filter.limit)
        )

        with self._scope() as session:
            rows = list(session.scalars(stmt).all())
            items = self._load_items(session, [row.id for row in rows])
            return [_order_from_rows(row, items[row.id]) for row in rows]

    def compare_and_set(
        self,
        order_id: str,
        expected_status: OrderStatus,
        changes: dict[str, Any],
        activity: OrderActivity,
    ) -> bool:
        stmt = (
            update(OrderModel)
            .where(OrderModel.id == order_id, OrderModel.status == expected_status)
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        with self._scope() as session:
            result = session.execute(stmt)
            if result.rowcount != 1:
                return False
            session.add(_activity_row(activity))
        return True

    def find_expired_pending(self, now: datetime, limit: int) -> list[str]:
        stmt = (
            select(OrderModel.id)
            .where(OrderModel.status == OrderStatus.PENDING, OrderModel.expires_at <= now)
            .order_by(OrderModel.expires_at.asc())
            .limit(limit)
        )
        with self._scope() as session:
            return list(session.scalars(stmt).all())

    def timeline(self, order_id: str) -> list[OrderActivity]:
        stmt = (
            select(OrderActivityModel)
            .where(OrderActivityModel.order_id == order_id)
            .order_by(OrderActivityModel.created_at.asc(), OrderActivityModel.id.asc())
        )
        with self._scope() as session:
            return [
                OrderActivity(
                    order_id=row.order_id,
                    type=row.type,
                    from_value=row.from_value,
                    to_value=row.to_value,
                    description=row.description,
                    performed_by=row.performed_by,
                    performed_by_role=row.performed_by_role,
                    created_at=as_utc(row.created_at),
                )
                for row in session.scalars(stmt).all()
            ]
