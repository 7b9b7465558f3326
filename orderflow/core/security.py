from __future__ import annotations

from typing import Literal

from fastapi import Header, HTTPException
from pydantic import BaseModel

from orderflow.core.config import get_settings


ActorRole = Literal["customer", "admin", "system"]


class Actor(BaseModel):
    role: ActorRole
    id: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def system_actor() -> Actor:
    return Actor(role="system", id=get_settings().system_actor_id)


def _auth_error(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


def _extract_api_key(authorization: str | None, x_api_key: str | None) -> str | None:
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise _auth_error("invalid authorization header")
        return token.strip()
    if x_api_key and x_api_key.strip():
        return x_api_key.strip()
    return None


def _actor_from_api_key(api_key: str, customer_id: str | None) -> Actor | None:
    settings = get_settings()
    if api_key == settings.admin_api_key:
        return Actor(role="admin", id=settings.admin_actor_id)
    if api_key == settings.system_api_key:
        return Actor(role="system", id=settings.system_actor_id)
    if api_key == settings.customer_api_key:
        # The gateway has already authenticated the customer and forwards the id.
        if not customer_id or not customer_id.strip():
            raise _auth_error("missing customer id")
        return Actor(role="customer", id=customer_id.strip())
    return None


def get_actor(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
    x_customer_id: str | None = Header(default=None),
) -> Actor:
    settings = get_settings()
    if not settings.auth_enabled:
        return Actor(role="admin", id=settings.admin_actor_id)

    api_key = _extract_api_key(authorization, x_api_key)
    if not api_key:
        raise _auth_error("missing api key")

    actor = _actor_from_api_key(api_key, x_customer_id)
    if actor is None:
        raise _auth_error("invalid api key")
    return actor


def require_roles(actor: Actor, allowed: set[str], detail: str = "insufficient role") -> None:
    if actor.role not in allowed:
        raise HTTPException(status_code=403, detail=detail)
