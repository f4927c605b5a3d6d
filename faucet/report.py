"""
Daily Report - renders per-channel mint totals through structlog.

Usage:
    python -m faucet.report                  # today and yesterday
    python -m faucet.report --day 2026-01-31
    python -m faucet.report --no-db          # in-memory store (FAUCET_NO_DB=1 also works)
"""

import argparse
import asyncio
import os
from datetime import UTC, date, datetime, timedelta

from structlog import get_logger

from faucet.config import Settings, get_settings
from faucet.models.domain import DailyReportRow
from faucet.observability.logging import setup_logging
from faucet.storage import MemoryStore, create_store
from faucet.storage.interfaces import FaucetStore, ReportingStore

logger = get_logger(__name__)

_TRUTHY = frozenset({"1", "true", "yes"})


def should_skip_db(flag: bool, environ: dict[str, str] | None = None) -> bool:
    """--no-db wins; otherwise FAUCET_NO_DB=1|true|yes (any case)."""
    if flag:
        return True
    value = (environ if environ is not None else os.environ).get("FAUCET_NO_DB", "")
    return value.strip().lower() in _TRUTHY


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="faucet.report", description="Render the daily mint summary")
    parser.add_argument(
        "--day",
        type=date.fromisoformat,
        help="UTC day to report (YYYY-MM-DD); defaults to today and yesterday",
    )
    parser.add_argument(
        "--no-db",
        action="store_true",
        help="Use the in-memory store instead of the configured backend",
    )
    return parser.parse_args(argv)


def render_report(title: str, day: date, rows: list[DailyReportRow]) -> None:
    logger.info("daily_report", title=title, day=day.isoformat(), entries=len(rows))
    for row in rows:
        logger.info(
            "channel_summary",
            day=day.isoformat(),
            channel=row.channel,
            total_amount=row.total_amount,
            success=row.success_count,
            failure=row.failure_count,
        )


async def generate_report(
    reporting: ReportingStore, days: list[tuple[str, date]]
) -> dict[date, list[DailyReportRow]]:
    """Fetch and render each requested day."""
    results: dict[date, list[DailyReportRow]] = {}
    for title, day in days:
        rows = await reporting.daily_summary(day)
        render_report(title, day, rows)
        results[day] = rows
    return results


async def run(args: argparse.Namespace, config: Settings) -> None:
    if should_skip_db(args.no_db):
        logger.warning("report_database_skipped", detail="using in-memory store, nothing is persisted")
        store: FaucetStore = MemoryStore()
    else:
        store = await create_store(config)

    if args.day is not None:
        days = [("requested", args.day)]
    else:
        today = datetime.now(UTC).date()
        days = [("today", today), ("yesterday", today - timedelta(days=1))]

    try:
        await generate_report(store, days)
    finally:
        await store.close()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    setup_logging()
    asyncio.run(run(args, get_settings()))


if __name__ == "__main__":
    main()
