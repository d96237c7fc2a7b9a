#!/usr/bin/env python3
"""Trigger reminder scheduler passes against a running backend."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    if explicit_value:
        candidate = explicit_value.strip()
    else:
        candidate = os.getenv("REMINDER_API_BASE_URL", "").strip() or "http://localhost:8000"
    if candidate.endswith("/api/v1/reminders"):
        return candidate
    return f"{candidate.rstrip('/')}/api/v1/reminders"


def _trigger_pass(base_url: str, *, cron_secret: str, timeout_seconds: int) -> dict[str, Any]:
    headers: dict[str, str] = {"Accept": "application/json"}
    if cron_secret:
        headers["Authorization"] = f"Bearer {cron_secret}"
    request = urllib.request.Request(f"{base_url}/run/once", data=b"", headers=headers, method="POST")
    try:
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        if exc.code == 409:
            return {"skipped": True, "detail": detail}
        raise RuntimeError(f"POST run/once failed with {exc.code}: {detail}") from exc


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Trigger payment reminder scheduler passes.")
    parser.add_argument(
        "--api-base-url",
        default=None,
        help=(
            "Backend base URL. Accepts either host root (e.g. http://localhost:8000) "
            "or full API prefix (e.g. http://localhost:8000/api/v1/reminders)."
        ),
    )
    parser.add_argument(
        "--cron-secret",
        default=None,
        help="Bearer secret for the scheduler endpoint. Defaults to CRON_SECRET from environment/.env.",
    )
    parser.add_argument(
        "--interval-seconds",
        type=int,
        default=0,
        help="Repeat every N seconds. 0 runs a single pass (default).",
    )
    parser.add_argument("--timeout-seconds", type=int, default=120, help="HTTP timeout per pass.")
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args()

    if args.interval_seconds < 0:
        raise SystemExit("--interval-seconds must be >= 0")

    api_base_url = _resolve_api_base_url(args.api_base_url)
    cron_secret = (args.cron_secret or os.getenv("CRON_SECRET", "")).strip()

    while True:
        try:
            summary = _trigger_pass(api_base_url, cron_secret=cron_secret, timeout_seconds=args.timeout_seconds)
        except (RuntimeError, urllib.error.URLError) as exc:
            print(f"scheduler pass failed: {exc}", file=sys.stderr)
            if args.interval_seconds == 0:
                return 1
        else:
            print(json.dumps(summary, indent=2))
        if args.interval_seconds == 0:
            return 0
        time.sleep(args.interval_seconds)


if __name__ == "__main__":
    raise SystemExit(main())
