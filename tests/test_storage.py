import json
import logging

import pytest
from conftest import make_context, make_row
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, ProgrammingError

from insights_backfill.ingest.normalize import hash_breakdowns
from insights_backfill.ingest.storage import AdaptiveInsightsStorage, SchemaMode, _upsert_sql, placeholder


def fetch_all(engine, sql):
    with engine.connect() as conn:
        return [dict(row._mapping) for row in conn.execute(text(sql))]


def test_upsert_sql_casts_json_columns_only_for_postgres():
    sql = _upsert_sql("t", ("a", "breakdowns", "spend"), ("a",), jsonb=True)
    assert "CAST(:breakdowns AS JSONB)" in sql
    assert "ON CONFLICT (a) DO UPDATE SET" in sql
    assert "spend = EXCLUDED.spend" in sql
    assert "a = EXCLUDED.a" not in sql
    assert "CAST" not in _upsert_sql("t", ("a", "breakdowns"), ("a",), jsonb=False)


@pytest.mark.asyncio
async def test_extended_upsert_is_idempotent(extended_engine):
    storage = AdaptiveInsightsStorage(extended_engine)
    context = make_context(level="ad", breakdowns_key="C", breakdown_keys=("country",))
    rows = [
        make_row(entity_id="6001", ad_id="6001", breakdowns={"country": "SE"}),
        make_row(entity_id="6001", ad_id="6001", breakdowns={"country": "NO"}, spend=3.0),
    ]

    await storage.upsert_daily(rows, context)
    rows[0].spend = 20.0
    await storage.upsert_daily(rows, context)

    stored = fetch_all(
        extended_engine,
        "SELECT entity_id, level, breakdowns_hash, breakdowns, spend FROM meta_insights_daily ORDER BY spend",
    )
    assert storage.schema_mode is SchemaMode.EXTENDED
    assert len(stored) == 2
    assert stored[0]["spend"] == 3.0
    assert stored[1]["spend"] == 20.0
    assert stored[1]["breakdowns_hash"] == hash_breakdowns({"country": "SE"})
    assert json.loads(stored[1]["breakdowns"]) == {"country": "SE"}
    assert {row["level"] for row in stored} == {"ad"}


@pytest.mark.asyncio
async def test_attribution_settings_are_separate_rows(extended_engine):
    storage = AdaptiveInsightsStorage(extended_engine)
    await storage.upsert_daily([make_row()], make_context(attribution_window="1d_click"))
    await storage.upsert_daily([make_row()], make_context(attribution_window="7d_click"))
    stored = fetch_all(extended_engine, "SELECT attribution_window FROM meta_insights_daily ORDER BY attribution_window")
    assert [row["attribution_window"] for row in stored] == ["1d_click", "7d_click"]


@pytest.mark.asyncio
async def test_slice_with_missing_values_does_not_overwrite_total(extended_engine):
    storage = AdaptiveInsightsStorage(extended_engine)
    await storage.upsert_daily([make_row(spend=100.0)], make_context(breakdowns_key="none"))
    await storage.upsert_daily(
        [make_row(spend=1.0, breakdowns={"region": None})],
        make_context(breakdowns_key="E", breakdown_keys=("region",)),
    )

    stored = fetch_all(extended_engine, "SELECT breakdowns_key, spend FROM meta_insights_daily ORDER BY spend")
    assert [(row["breakdowns_key"], row["spend"]) for row in stored] == [("E", 1), ("none", 100)]


@pytest.mark.asyncio
async def test_empty_rows_are_a_no_op(extended_engine):
    storage = AdaptiveInsightsStorage(extended_engine)
    await storage.upsert_daily([], make_context())
    assert storage.schema_mode is SchemaMode.UNKNOWN
    assert fetch_all(extended_engine, "SELECT * FROM meta_insights_daily") == []


@pytest.mark.asyncio
async def test_rows_are_written_in_batches(extended_engine, monkeypatch):
    storage = AdaptiveInsightsStorage(extended_engine, batch_size=2)
    batches = []
    original = storage._write_batch

    def counting(batch, context):
        batches.append(len(batch))
        original(batch, context)

    monkeypatch.setattr(storage, "_write_batch", counting)
    rows = [make_row(entity_id=str(n), account_id=str(n)) for n in range(5)]
    await storage.upsert_daily(rows, make_context())

    assert batches == [2, 2, 1]
    assert len(fetch_all(extended_engine, "SELECT * FROM meta_insights_daily")) == 5


@pytest.mark.asyncio
async def test_falls_back_to_legacy_layout_once(legacy_engine, monkeypatch):
    storage = AdaptiveInsightsStorage(legacy_engine)
    context = make_context(level="campaign")
    rows = [make_row(entity_id="2001", campaign_id="2001", spend=5.0)]

    await storage.upsert_daily(rows, context)
    assert storage.schema_mode is SchemaMode.LEGACY

    extended_calls = []
    monkeypatch.setattr(storage, "_write_extended", lambda batch, ctx: extended_calls.append(batch))
    rows[0].spend = 7.5
    await storage.upsert_daily(rows, context)

    assert extended_calls == []
    stored = fetch_all(legacy_engine, "SELECT * FROM meta_insights_daily")
    assert len(stored) == 1
    assert stored[0]["ad_account_id"] == "111"
    assert stored[0]["campaign_id"] == "2001"
    assert stored[0]["adset_id"] == placeholder("campaign") == "__campaign__"
    assert stored[0]["ad_id"] == "__campaign__"
    assert float(stored[0]["spend"]) == 7.5


@pytest.mark.asyncio
async def test_legacy_layout_drops_breakdown_rows_with_warning_and_dedupes(legacy_engine, caplog):
    storage = AdaptiveInsightsStorage(legacy_engine)
    storage.schema_mode = SchemaMode.LEGACY
    rows = [
        make_row(breakdowns={"country": "SE"}),
        make_row(breakdowns={"age": None}, spend=1.0),
        make_row(spend=2.0),
    ]
    with caplog.at_level(logging.WARNING, logger="insights_backfill.ingest.storage"):
        await storage.upsert_daily(rows, make_context(breakdowns_key="C"))

    stored = fetch_all(legacy_engine, "SELECT * FROM meta_insights_daily")
    assert len(stored) == 1
    assert stored[0]["campaign_id"] == "__account__"
    assert float(stored[0]["spend"]) == 2.0
    warnings = [record for record in caplog.records if record.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert "dropped 1 rows for breakdowns=C" in warnings[0].getMessage()


@pytest.mark.asyncio
async def test_schema_cache_message_triggers_fallback(legacy_engine, monkeypatch):
    storage = AdaptiveInsightsStorage(legacy_engine)

    def missing_column(batch, context):
        raise ProgrammingError(
            "INSERT INTO meta_insights_daily",
            {},
            Exception("Could not find the 'level' column of 'meta_insights_daily' in the schema cache"),
        )

    monkeypatch.setattr(storage, "_write_extended", missing_column)
    await storage.upsert_daily([make_row()], make_context())

    assert storage.schema_mode is SchemaMode.LEGACY
    assert len(fetch_all(legacy_engine, "SELECT * FROM meta_insights_daily")) == 1


@pytest.mark.asyncio
async def test_other_database_errors_propagate(extended_engine, monkeypatch):
    storage = AdaptiveInsightsStorage(extended_engine)

    def locked(batch, context):
        raise OperationalError("INSERT INTO meta_insights_daily", {}, Exception("database is locked"))

    monkeypatch.setattr(storage, "_write_extended", locked)
    with pytest.raises(OperationalError):
        await storage.upsert_daily([make_row()], make_context())
    assert storage.schema_mode is SchemaMode.UNKNOWN
