from dataclasses import dataclass, field
from datetime import date

import pytest
from sqlalchemy import Column, Date, MetaData, Numeric, Table, Text, create_engine
from sqlalchemy.pool import StaticPool

from insights_backfill.db.migrate import run_migrations
from insights_backfill.ingest.meta_client import InsightsJob, PollResult, ResultPage
from insights_backfill.ingest.models import NormalizedInsightRow, UpsertDailyContext

legacy_metadata = MetaData()

legacy_insights = Table(
    "meta_insights_daily",
    legacy_metadata,
    Column("tenant_id", Text, primary_key=True),
    Column("date", Date, primary_key=True),
    Column("ad_account_id", Text, primary_key=True),
    Column("campaign_id", Text, primary_key=True),
    Column("adset_id", Text, primary_key=True),
    Column("ad_id", Text, primary_key=True),
    Column("spend", Numeric),
    Column("impressions", Numeric),
    Column("clicks", Numeric),
    Column("purchases", Numeric),
    Column("revenue", Numeric),
)


def _memory_engine():
    # one shared connection so executor threads see the same in-memory database
    return create_engine(
        "sqlite://",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )


@pytest.fixture()
def extended_engine():
    engine = _memory_engine()
    run_migrations(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def legacy_engine():
    engine = _memory_engine()
    legacy_metadata.create_all(engine)
    yield engine
    engine.dispose()


def make_row(**overrides) -> NormalizedInsightRow:
    values = {
        "date_start": date(2025, 1, 1),
        "date_stop": date(2025, 1, 1),
        "entity_id": "111",
        "account_id": "111",
        "spend": 12.5,
        "impressions": 1000.0,
        "clicks": 40.0,
        "purchases": 3.0,
        "revenue": 150.0,
    }
    values.update(overrides)
    return NormalizedInsightRow(**values)


def make_context(**overrides) -> UpsertDailyContext:
    values = {
        "tenant_id": "tenant-1",
        "account_id": "act_111",
        "level": "account",
        "action_report_time": "impression",
        "attribution_window": "1d_click",
        "breakdowns_key": "none",
        "breakdown_keys": (),
    }
    values.update(overrides)
    return UpsertDailyContext(**values)


@dataclass
class FakeReportClient:
    """In-memory stand-in for MetaInsightsClient.

    ``pages`` maps a page URL to ``(rows, next_url)``. ``poll_failures`` is a
    list of exceptions raised by successive ``poll_job`` calls before it
    succeeds.
    """

    pages: dict = field(default_factory=dict)
    files: list = field(default_factory=lambda: ["https://files/1"])
    poll_failures: list = field(default_factory=list)
    started: list = field(default_factory=list)
    poll_calls: int = 0
    closed: bool = False
    healthy: bool = True

    async def start_insights_job(self, account_id, params):
        self.started.append((account_id, params))
        job_id = f"job-{len(self.started)}"
        return InsightsJob(job_id=job_id, result_url=f"https://graph/{job_id}/insights")

    async def health(self, account_id):
        self.started.append((account_id, {"health": True}))
        return self.healthy

    async def poll_job(self, job_id):
        self.poll_calls += 1
        if self.poll_failures:
            raise self.poll_failures.pop(0)
        return PollResult(job_id=job_id, files=list(self.files))

    async def fetch_result_page(self, url):
        rows, next_url = self.pages.get(url, ([], None))
        return ResultPage(data=rows, next=next_url)

    async def close(self):
        self.closed = True


@dataclass
class RecordingStorage:
    calls: list = field(default_factory=list)

    async def upsert_daily(self, rows, context):
        self.calls.append((list(rows), context))


@pytest.fixture()
def fake_client():
    return FakeReportClient()


@pytest.fixture()
def recording_storage():
    return RecordingStorage()
