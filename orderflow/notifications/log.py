from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from orderflow.orders.store import as_utc
from orderflow.persistence import pg
from orderflow.persistence.models import NotificationLogModel

SENT = "sent"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass(frozen=True)
class NotificationRecord:
    event_id: str
    order_id: str
    kind: str
    recipient: str | None
    status: str
    created_at: datetime
    error: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "order_id": self.order_id,
            "kind": self.kind,
            "recipient": self.recipient,
            "status": self.status,
            "error": self.error,
            "detail": self.detail,
            "created_at": self.created_at.isoformat().replace("+00:00", "Z"),
        }


class NotificationLogStore:
    def __init__(self, session_factory: sessionmaker | None = None):
        self._session_factory = session_factory

    def record(
        self,
        *,
        event_id: str,
        order_id: str,
        kind: str,
        recipient: str | None,
        status: str,
        error: str | None = None,
        detail: dict[str, Any] | None = None,
        created_at: datetime,
    ) -> None:
        with pg.session_scope(self._session_factory) as session:
            session.add(
                NotificationLogModel(
                    event_id=event_id,
                    order_id=order_id,
                    kind=kind,
                    recipient=recipient,
                    status=status,
                    error=error,
                    detail=detail or {},
                    created_at=created_at,
                )
            )

    def query(
        self, *, status: str | None = None, order_id: str | None = None, limit: int = 100
    ) -> list[NotificationRecord]:
        stmt = select(NotificationLogModel).order_by(NotificationLogModel.id.desc()).limit(limit)
        if status:
            stmt = stmt.where(NotificationLogModel.status == status)
        if order_id:
            stmt = stmt.where(NotificationLogModel.order_id == order_id)
        with pg.session_scope(self._session_factory) as session:
            return [
                NotificationRecord(
                    event_id=row.event_id,
                    order_id=row.order_id,
                    kind=row.kind,
                    recipient=row.recipient,
                    status=row.status,
                    error=row.error,
                    detail=dict(row.detail or {}),
                    created_at=as_utc(row.created_at),
                )
                for row in session.scalars(stmt).all()
            ]

    def list_failed(self, limit: int = 100) -> list[NotificationRecord]:
        return self.query(status=FAILED, limit=limit)
