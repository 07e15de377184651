#!/usr/bin/env python3
"""Render the crew shift report PDF for a date range.

Usage:
    uv run sigor-shift-report                              # Last 30 days
    uv run sigor-shift-report --start 2026-09-01 --end 2026-09-30
    uv run sigor-shift-report --user <user-id> --output reports/
    uv run sigor-shift-report --vehicle <vehicle-id>
"""

import argparse
import asyncio
import logging
import sys
from datetime import date, timedelta
from pathlib import Path

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Silence noisy libraries
logging.getLogger("azure").setLevel(logging.WARNING)

DEFAULT_DAYS = 30


async def _run(args: argparse.Namespace) -> Path:
    """Fetch shifts, render the PDF, and write it to the output directory."""
    from sigor.core.config import local_now
    from sigor.core.store import Backend
    from sigor.reports.pdf import render_shift_report, report_filename
    from sigor.reports.shifts import fetch_shifts

    today = local_now().date()
    end = args.end or today
    start = args.start or end - timedelta(days=DEFAULT_DAYS)

    async with Backend() as backend:
        records = await fetch_shifts(
            backend, start, end, user_id=args.user, vehicle_id=args.vehicle
        )

    now = local_now()
    output_dir = Path(args.output)
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / report_filename(now)
    path.write_bytes(render_shift_report(records, start, end, now=now))

    print(f"Wrote {len(records)} shifts ({start:%d/%m/%Y} to {end:%d/%m/%Y}) to {path}")
    return path


def main() -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Render the crew shift report PDF for a date range.",
    )
    parser.add_argument("--start", type=date.fromisoformat, help="First day (YYYY-MM-DD)")
    parser.add_argument("--end", type=date.fromisoformat, help="Last day (YYYY-MM-DD)")
    parser.add_argument("--user", help="Only this operator's shifts (user id)")
    parser.add_argument("--vehicle", help="Only shifts aboard this vehicle (vehicle id)")
    parser.add_argument(
        "--output",
        default=".",
        help="Output directory (default: current directory)",
    )

    args = parser.parse_args()
    if args.start and args.end and args.start > args.end:
        parser.error("--start must not be after --end")

    try:
        asyncio.run(_run(args))
    except Exception:
        logger.exception("Shift report failed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
