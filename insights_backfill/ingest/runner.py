"""Meta insights backfill runner."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol

from insights_backfill.ingest.errors import is_transient
from insights_backfill.ingest.models import (
    ChunkConfig,
    MatrixCombination,
    NormalizedInsightRow,
    UpsertDailyContext,
    WorkItem,
)
from insights_backfill.ingest.normalize import build_params, normalize_row
from insights_backfill.utils.dates import format_date
from insights_backfill.utils.retry import retry_async

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
BASE_DELAY = 2.0


class InsightsStorage(Protocol):
    async def upsert_daily(self, rows: list[NormalizedInsightRow], context: UpsertDailyContext) -> None:
        ...


class ReportClient(Protocol):
    async def start_insights_job(self, account_id: str, params: dict[str, Any]) -> Any:
        ...

    async def poll_job(self, job_id: str) -> Any:
        ...

    async def fetch_result_page(self, url: str) -> Any:
        ...


def build_work_items(combinations: Sequence[MatrixCombination], chunks: Sequence[ChunkConfig]) -> list[WorkItem]:
    return [WorkItem(combination=combination, chunk=chunk) for combination in combinations for chunk in chunks]


class InsightsBackfillRunner:
    def __init__(
        self,
        client: ReportClient,
        storage: InsightsStorage,
        *,
        tenant_id: str,
        account_id: str,
        max_attempts: int = MAX_ATTEMPTS,
        base_delay: float = BASE_DELAY,
        sleep: Callable[[float], Awaitable] | None = None,
    ) -> None:
        self.client = client
        self.storage = storage
        self.tenant_id = tenant_id
        self.account_id = account_id
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep

    async def run_monthly_chunk(self, combination: MatrixCombination, chunk: ChunkConfig) -> int:
        """Fetch and persist one combination for one chunk, retrying transient failures."""
        attempt = retry_async(
            self._run_chunk_once,
            attempts=self.max_attempts,
            base_delay=self.base_delay,
            jitter=0.0,
            should_retry=is_transient,
            sleep=self._sleep,
        )
        return await attempt(combination, chunk)

    async def run_work_item(self, item: WorkItem) -> int:
        return await self.run_monthly_chunk(item.combination, item.chunk)

    async def run_full_matrix(
        self,
        combinations: Sequence[MatrixCombination],
        chunks: Sequence[ChunkConfig],
    ) -> int:
        """Run every combination for every chunk sequentially; the first failure aborts."""
        written = 0
        for item in build_work_items(combinations, chunks):
            try:
                written += await self.run_work_item(item)
            except Exception:
                logger.error(
                    "Meta insights chunk failed %s",
                    self._describe(item.combination, item.chunk),
                )
                raise
        return written

    async def _run_chunk_once(self, combination: MatrixCombination, chunk: ChunkConfig) -> int:
        params = build_params(
            level=combination.level,
            since=chunk.month_since,
            until=chunk.month_until,
            breakdowns=combination.breakdowns,
            action_report_time=combination.action_report_time,
            attribution_window=combination.attribution_window,
        )
        job = await self.client.start_insights_job(self.account_id, params)
        result = await self.client.poll_job(job.job_id)

        breakdown_names = combination.breakdown_names
        rows: list[NormalizedInsightRow] = []
        for file_url in result.files or [job.result_url]:
            next_url: str | None = file_url
            while next_url:
                page = await self.client.fetch_result_page(next_url)
                for raw in page.data:
                    if not isinstance(raw, dict):
                        continue
                    normalized = normalize_row(raw, level=combination.level, breakdown_keys=breakdown_names)
                    if normalized is not None:
                        rows.append(normalized)
                next_url = page.next

        if not rows:
            logger.info("Meta chunk produced no rows %s", self._describe(combination, chunk))
            return 0

        await self.storage.upsert_daily(
            rows,
            UpsertDailyContext(
                tenant_id=self.tenant_id,
                account_id=self.account_id,
                level=combination.level,
                action_report_time=combination.action_report_time,
                attribution_window=combination.attribution_window,
                breakdowns_key=combination.breakdown_key,
                breakdown_keys=tuple(breakdown_names),
            ),
        )
        logger.info("Meta chunk stored rows=%d %s", len(rows), self._describe(combination, chunk))
        return len(rows)

    def _describe(self, combination: MatrixCombination, chunk: ChunkConfig) -> str:
        return (
            f"tenant={self.tenant_id} account={self.account_id} level={combination.level} "
            f"breakdowns={combination.breakdown_key} action_report_time={combination.action_report_time} "
            f"attribution_window={combination.attribution_window} "
            f"since={format_date(chunk.month_since)} until={format_date(chunk.month_until)}"
        )
