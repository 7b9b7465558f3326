from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from orderflow.api.routes_admin import router as admin_router
from orderflow.api.routes_orders import router as orders_router
from orderflow.api.routes_payments import router as payments_router
from orderflow.core.config import get_settings
from orderflow.core.logging import configure_logging
from orderflow.orders.errors import OrderError
from orderflow.orders.service import build_order_service
from orderflow.persistence.pg import init_db

configure_logging()
logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(title="Orderflow")
app.state.order_service = None


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    # Tests and embedding processes may install a pre-wired service.
    if app.state.order_service is None:
        app.state.order_service = build_order_service(settings)
    app.state.order_service.start()
    logger.info(
        "order service ready: ttl=%smin sweeper=%s interval=%ss",
        settings.order_ttl_minutes,
        settings.sweeper_enabled,
        settings.sweep_interval_seconds,
    )


@app.on_event("shutdown")
def on_shutdown() -> None:
    service, app.state.order_service = app.state.order_service, None
    if service is not None:
        service.stop()


@app.exception_handler(OrderError)
async def order_error_handler(_: Request, exc: OrderError):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": str(exc),
            "error": exc.code,
        },
    )


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(orders_router)
app.include_router(admin_router)
app.include_router(payments_router)
