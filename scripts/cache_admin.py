#!/usr/bin/env python3
"""
Inspect and evict the Document Gateway response cache.

Calls the service's cache administration endpoints so an operator can check
cache health or force fresh reads after editing data directly in MongoDB.

    python scripts/cache_admin.py stats
    python scripts/cache_admin.py clear --pattern utiles/products
    python scripts/cache_admin.py cleanup
"""

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Optional

import httpx


def run(command: str, *, base_url: str, pattern: Optional[str] = None, timeout: float = 10.0) -> dict:
    """Execute one cache command and return the response body."""
    with httpx.Client(base_url=base_url, timeout=timeout) as client:
        if command == "stats":
            response = client.get("/api/cache/stats")
        elif command == "clear":
            response = client.post("/api/cache/clear", json={"pattern": pattern} if pattern else None)
        else:
            response = client.post("/api/cache/cleanup")
        response.raise_for_status()
        return response.json()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Document Gateway cache administration.")
    parser.add_argument("command", choices=["stats", "clear", "cleanup"], help="Cache operation to run")
    parser.add_argument("--pattern", default=None, help="Key prefix to invalidate (clear only)")
    parser.add_argument("--base-url", default=os.getenv("DOCS_BASE_URL", "http://localhost:8000"), help="Document Gateway URL")
    parser.add_argument("--timeout", type=float, default=10.0, help="Request timeout in seconds")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write the JSON response")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    if args.pattern and args.command != "clear":
        print("[cache-admin] --pattern only applies to clear", file=sys.stderr)
        return 2

    try:
        result = run(args.command, base_url=args.base_url, pattern=args.pattern, timeout=args.timeout)
    except KeyboardInterrupt:
        return 130
    except httpx.HTTPError as exc:  # pragma: no cover - CLI surface
        print(f"[cache-admin] failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2))

    if args.output:
        args.output.write_text(json.dumps(result, indent=2))

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
