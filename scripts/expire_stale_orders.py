#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os

import requests


def main() -> None:
    parser = argparse.ArgumentParser(description="Trigger one expiration sweep on a running orderflow API")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument(
        "--api-key",
        default=os.getenv("ORDERFLOW_SYSTEM_API_KEY", "of-system-dev-key"),
        help="system or admin api key (default: $ORDERFLOW_SYSTEM_API_KEY)",
    )
    args = parser.parse_args()

    resp = requests.post(
        f"{args.base_url}/admin/orders/expire",
        headers={"X-API-Key": args.api_key},
        timeout=60,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
