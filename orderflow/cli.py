from __future__ import annotations

import argparse
import json

from orderflow.core.config import get_settings
from orderflow.core.logging import configure_logging
from orderflow.orders.errors import OrderError
from orderflow.orders.service import OrderService, build_order_service
from orderflow.persistence.pg import init_db


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Orderflow CLI")
    top = parser.add_subparsers(dest="command", required=True)

    top.add_parser("sweep", help="Expire stale Pending orders once and print the count")

    show = top.add_parser("show", help="Print one order with its activity timeline")
    show.add_argument("order_id")

    return parser


def _service() -> OrderService:
    init_db()
    # One-shot commands never need the background sweeper or a worker pool.
    settings = get_settings().model_copy(update={"sweeper_enabled": False, "notification_workers": 0})
    return build_order_service(settings)


def _print(payload: dict) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _sweep(_: argparse.Namespace) -> int:
    service = _service()
    try:
        _print(service.cancel_expired_pending_orders())
    finally:
        service.stop()
    return 0


def _show(args: argparse.Namespace) -> int:
    service = _service()
    try:
        order = service.get_order_by_id(args.order_id)
        timeline = service.get_order_timeline(args.order_id)
    except OrderError as exc:
        _print({"error": exc.code, "detail": str(exc)})
        return 1
    finally:
        service.stop()
    _print({**order.to_dict(), "timeline": [activity.to_dict() for activity in timeline]})
    return 0


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command == "sweep":
        return _sweep(args)
    if args.command == "show":
        return _show(args)

    parser.error("unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
