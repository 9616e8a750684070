#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run the schedule reminder dispatch once against the configured stores and notifier."
    )
    parser.add_argument("--dry-run", action="store_true", help="Evaluate the window without sending or recording.")
    parser.add_argument("--now", default=None, help="Evaluate as of this UTC instant (ISO-8601), e.g. 2024-01-10T09:45:00Z.")
    parser.add_argument("--json", action="store_true", help="Print the full run summary as JSON.")
    parser.add_argument("--log-level", default="INFO")
    return parser


def main() -> int:
    _load_dotenv(ROOT_DIR / ".env")
    parser = build_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    from petcare_web.config import get_settings
    from petcare_web.recurrence import parse_instant
    from petcare_web.reminder_dispatch import check_now_override

    now = None
    if args.now:
        now = parse_instant(args.now)
        if now is None:
            parser.error(f"--now is not an ISO-8601 instant: {args.now!r}")
    try:
        check_now_override(
            now,
            dry_run=args.dry_run,
            allow_live=get_settings().reminder_allow_live_now_override,
        )
    except ValueError as exc:
        parser.error(f"--now: {exc} (set REMINDER_ALLOW_LIVE_NOW_OVERRIDE=true to allow live runs)")

    from petcare_web.api import run_reminder_dispatch

    summary = run_reminder_dispatch(now=now, dry_run=args.dry_run)
    response = summary.to_response()

    if args.json:
        print(json.dumps(response.model_dump(mode="json"), indent=2))
    else:
        print(
            f"window {response.window_start.isoformat()} .. {response.window_end.isoformat()}: "
            f"{response.occurrence_count} occurrences, sent={response.sent_count} "
            f"failed={response.failed_count} skipped={response.skipped_count}"
        )
    return 1 if response.failed_count else 0


if __name__ == "__main__":
    raise SystemExit(main())
