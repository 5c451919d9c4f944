#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from subscriptions_web.config import get_settings  # noqa: E402
from subscriptions_web.session_tokens import ADMIN_SUBJECT, issue_session_token  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Print a signed session token for local API calls.")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--user-id", help="User id the token is issued for (e.g. usr_000001).")
    target.add_argument("--admin", action="store_true", help="Issue an admin session token instead.")
    parser.add_argument(
        "--ttl-minutes",
        type=int,
        default=None,
        help="Token lifetime. Defaults to USER_SESSION_TTL_MINUTES (480 for admin tokens).",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    settings = get_settings()
    if args.admin:
        token, expires_at = issue_session_token(
            user_id=ADMIN_SUBJECT,
            secret=settings.admin_session_secret,
            ttl_minutes=args.ttl_minutes or 480,
        )
    else:
        token, expires_at = issue_session_token(
            user_id=args.user_id,
            secret=settings.user_session_secret,
            ttl_minutes=args.ttl_minutes or settings.user_session_ttl_minutes,
        )
    print(json.dumps({"session_token": token, "expires_at": expires_at.isoformat()}, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
