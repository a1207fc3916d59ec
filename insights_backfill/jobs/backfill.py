"""Meta insights backfill job.

Usage::

    python -m insights_backfill.jobs.backfill \\
        --tenant fa6a78a8-557b-4687-874d-261236d78ac1 \\
        --account act_291334701 \\
        --since 2025-10-01 --until 2025-10-31

Pass ``--check`` instead of a date range to only verify access to the account.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import dataclass
from typing import Sequence

from dotenv import load_dotenv

from insights_backfill.db.session import create_engine_from_env
from insights_backfill.ingest.errors import ConfigurationError
from insights_backfill.ingest.matrix import DEFAULT_PRESET, build_matrix_combinations, resolve_preset
from insights_backfill.ingest.meta_client import MetaInsightsClient
from insights_backfill.ingest.models import WorkItem
from insights_backfill.ingest.runner import InsightsBackfillRunner, build_work_items
from insights_backfill.ingest.storage import AdaptiveInsightsStorage
from insights_backfill.utils.concurrency import run_with_concurrency
from insights_backfill.utils.dates import enumerate_chunks, format_date

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


@dataclass(slots=True)
class BackfillSummary:
    completed: int
    total: int
    combinations: int
    chunks: int


def _csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backfill Meta insights for one tenant and ad account")
    parser.add_argument("--tenant", required=True, help="Tenant ID")
    parser.add_argument("--account", required=True, help="Meta ad account id, e.g. act_123")
    parser.add_argument("--since", help="Start date (YYYY-MM-DD)")
    parser.add_argument("--until", help="End date (YYYY-MM-DD)")
    parser.add_argument("--chunk-size", type=int, default=1, help="Calendar months per chunk (default 1)")
    parser.add_argument("--concurrency", type=int, default=2, help="Chunks fetched in parallel (default 2)")
    parser.add_argument("--preset", default=DEFAULT_PRESET, help="Dimension preset (default full)")
    parser.add_argument("--levels", type=_csv, help="Comma-separated levels")
    parser.add_argument("--breakdowns", type=_csv, help="Comma-separated breakdown keys")
    parser.add_argument("--action-times", type=_csv, help="Comma-separated action report times")
    parser.add_argument("--attr-windows", type=_csv, help="Comma-separated attribution windows")
    parser.add_argument(
        "--check", action="store_true", help="Only verify the token can start an insights job for the account"
    )
    args = parser.parse_args(argv)
    if not args.check and not (args.since and args.until):
        parser.error("--since and --until are required unless --check is given")
    args.chunk_size = max(1, args.chunk_size)
    args.concurrency = max(1, args.concurrency)
    return args


def configure_logging() -> None:
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper(), format=LOG_FORMAT)


def client_from_env() -> MetaInsightsClient:
    token = os.environ.get("META_ACCESS_TOKEN")
    if not token:
        raise ConfigurationError("META_ACCESS_TOKEN is not set")
    return MetaInsightsClient(token)


async def check_access(args: argparse.Namespace, *, client: MetaInsightsClient | None = None) -> bool:
    client = client or client_from_env()
    try:
        ok = await client.health(args.account)
    finally:
        await client.close()
    logger.info("Meta access check tenant=%s account=%s ok=%s", args.tenant, args.account, ok)
    return ok


async def run_backfill(
    args: argparse.Namespace,
    *,
    client: MetaInsightsClient | None = None,
    storage: AdaptiveInsightsStorage | None = None,
) -> BackfillSummary:
    config = resolve_preset(
        args.preset,
        levels=args.levels,
        breakdown_keys=args.breakdowns,
        action_report_times=args.action_times,
        attribution_windows=args.attr_windows,
    )
    chunks = enumerate_chunks(args.since, args.until, args.chunk_size)
    combinations = build_matrix_combinations(config)
    items = build_work_items(combinations, chunks)

    if storage is None:
        storage = AdaptiveInsightsStorage(create_engine_from_env())
    if client is None:
        client = client_from_env()

    logger.info(
        "Starting Meta backfill tenant=%s account=%s since=%s until=%s chunk_size=%d concurrency=%d "
        "preset=%s combinations=%d chunks=%d total=%d",
        args.tenant,
        args.account,
        format_date(chunks[0].month_since),
        format_date(chunks[-1].month_until),
        args.chunk_size,
        args.concurrency,
        args.preset,
        len(combinations),
        len(chunks),
        len(items),
    )

    runner = InsightsBackfillRunner(client, storage, tenant_id=args.tenant, account_id=args.account)

    async def handle(item: WorkItem) -> int:
        logger.info(
            "Backfill chunk start level=%s breakdowns=%s action_report_time=%s attribution_window=%s "
            "since=%s until=%s",
            item.combination.level,
            item.combination.breakdown_key,
            item.combination.action_report_time,
            item.combination.attribution_window,
            format_date(item.chunk.month_since),
            format_date(item.chunk.month_until),
        )
        try:
            return await runner.run_work_item(item)
        except Exception as exc:
            logger.error(
                "Backfill chunk failed level=%s breakdowns=%s since=%s until=%s: %s",
                item.combination.level,
                item.combination.breakdown_key,
                format_date(item.chunk.month_since),
                format_date(item.chunk.month_until),
                exc,
            )
            raise

    def report(completed: int, total: int) -> None:
        logger.info("Backfill progress completed=%d total=%d", completed, total)

    try:
        completed = await run_with_concurrency(items, args.concurrency, handle, on_complete=report)
    finally:
        await client.close()

    logger.info(
        "Backfill finished tenant=%s account=%s completed=%d total=%d schema=%s",
        args.tenant,
        args.account,
        completed,
        len(items),
        storage.schema_mode.value,
    )
    return BackfillSummary(completed=completed, total=len(items), combinations=len(combinations), chunks=len(chunks))


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()
    configure_logging()
    args = parse_args(argv)
    try:
        if args.check:
            return 0 if asyncio.run(check_access(args)) else 1
        asyncio.run(run_backfill(args))
    except Exception:
        logger.exception("Meta backfill failed tenant=%s account=%s", args.tenant, args.account)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
