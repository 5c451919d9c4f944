#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import time
import urllib.error
import urllib.request
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger("reminder_worker")


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
        candidate = os.getenv("SERVER_URL", "").strip() or "http://localhost:5500"
    prefix = os.getenv("API_PREFIX", "/api/v1")
    if candidate.rstrip("/").endswith(prefix):
        return candidate.rstrip("/")
    return f"{candidate.rstrip('/')}{prefix}"


def _request_json(method: str, base_url: str, path: str) -> dict[str, Any]:
    request = urllib.request.Request(
        f"{base_url}/{path.lstrip('/')}",
        data=b"" if method == "POST" else None,
        headers={"Accept": "application/json"},
        method=method,
    )
    try:
        with urllib.request.urlopen(request, timeout=60) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"{method} {path} failed with {exc.code}: {detail}") from exc


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Host loop for the polling wake scheduler: resumes due reminder workflows "
            "and periodically reconciles subscriptions renewing within the reminder window."
        )
    )
    parser.add_argument(
        "--api-base-url",
        default=None,
        help="Backend base URL (host root or full API prefix). Defaults to SERVER_URL + API_PREFIX.",
    )
    parser.add_argument(
        "--interval-seconds",
        type=int,
        default=60,
        help="Seconds between resume-due sweeps (default: 60).",
    )
    parser.add_argument(
        "--reconcile-interval-hours",
        type=float,
        default=24.0,
        help="Hours between process-reminders reconciliation calls (default: 24).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one reconcile and one sweep, then exit.",
    )
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    if args.interval_seconds < 1:
        raise SystemExit("--interval-seconds must be positive")

    api_base_url = _resolve_api_base_url(args.api_base_url)
    reconcile_every = max(60.0, args.reconcile_interval_hours * 3600)
    last_reconcile: float | None = None

    while True:
        started = time.monotonic()
        try:
            if last_reconcile is None or started - last_reconcile >= reconcile_every:
                summary = _request_json("GET", api_base_url, "workflow/process-reminders")
                last_reconcile = started
                logger.info(
                    "reconcile evaluated %s subscriptions, started %s workflows",
                    summary.get("evaluated_count"),
                    summary.get("started_count"),
                )
            sweep = _request_json("POST", api_base_url, "workflow/resume-due")
            if sweep.get("processed_count"):
                logger.info(
                    "resumed %s workflows at %s",
                    sweep["processed_count"],
                    datetime.now(timezone.utc).isoformat(),
                )
        except (RuntimeError, urllib.error.URLError) as exc:
            logger.warning("worker tick failed: %s", exc)

        if args.once:
            return 0
        time.sleep(max(0.0, args.interval_seconds - (time.monotonic() - started)))


if __name__ == "__main__":
    raise SystemExit(main())
