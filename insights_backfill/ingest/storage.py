"""Idempotent persistence of normalized Meta insights rows.

Two physical layouts of ``meta_insights_daily`` exist in the wild:

* the *extended* layout, one row per entity, breakdown slice and attribution
  setting, keyed by ``(tenant_id, date, level, entity_id, action_report_time,
  attribution_window, breakdowns_hash)``;
* the *legacy* layout, keyed by ``(tenant_id, date, ad_account_id,
  campaign_id, adset_id, ad_id)`` with only the core metrics.

:class:`AdaptiveInsightsStorage` starts out not knowing which one it talks to,
tries the extended layout first and switches to the legacy layout for the rest
of its lifetime when the database reports missing columns.

The legacy key has no breakdown dimension, so rows carrying a breakdown value
are dropped in legacy mode and a warning is logged with the count; only the
unbroken-down rows of a combination reach the legacy table.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from typing import Any

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import text

from insights_backfill.ingest.errors import ErrorKind, classify_message
from insights_backfill.ingest.models import NormalizedInsightRow, UpsertDailyContext
from insights_backfill.ingest.normalize import hash_breakdowns
from insights_backfill.utils.dates import format_date

logger = logging.getLogger(__name__)

UPSERT_BATCH_SIZE = 500
DEFAULT_TABLE = "meta_insights_daily"

EXTENDED_KEY = (
    "tenant_id",
    "date",
    "level",
    "entity_id",
    "action_report_time",
    "attribution_window",
    "breakdowns_hash",
)
EXTENDED_COLUMNS = EXTENDED_KEY + (
    "ad_account_id",
    "campaign_id",
    "campaign_name",
    "adset_id",
    "adset_name",
    "ad_id",
    "ad_name",
    "date_stop",
    "breakdowns_key",
    "breakdowns",
    "actions",
    "action_values",
    "spend",
    "impressions",
    "reach",
    "clicks",
    "unique_clicks",
    "inline_link_clicks",
    "conversions",
    "purchases",
    "add_to_cart",
    "leads",
    "revenue",
    "purchase_roas",
    "cost_per_action_type",
    "cpm",
    "cpc",
    "ctr",
    "frequency",
    "objective",
    "effective_status",
    "configured_status",
    "buying_type",
    "daily_budget",
    "lifetime_budget",
    "currency",
)
JSON_COLUMNS = frozenset({"breakdowns", "actions", "action_values", "purchase_roas", "cost_per_action_type"})

LEGACY_KEY = ("tenant_id", "date", "ad_account_id", "campaign_id", "adset_id", "ad_id")
LEGACY_COLUMNS = LEGACY_KEY + ("spend", "impressions", "clicks", "purchases", "revenue")


class SchemaMode(str, enum.Enum):
    UNKNOWN = "unknown"
    EXTENDED = "extended"
    LEGACY = "legacy"


def placeholder(level: str) -> str:
    return f"__{level}__"


def is_schema_mismatch(exc: BaseException) -> bool:
    message = str(getattr(exc, "orig", None) or exc)
    return classify_message(message) is ErrorKind.SCHEMA_MISMATCH


def _json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, separators=(",", ":"))


def to_extended_row(row: NormalizedInsightRow, context: UpsertDailyContext) -> dict[str, Any]:
    return {
        "tenant_id": context.tenant_id,
        "date": format_date(row.date_start),
        "level": context.level,
        "entity_id": row.entity_id,
        "action_report_time": context.action_report_time,
        "attribution_window": context.attribution_window,
        "breakdowns_hash": hash_breakdowns(row.breakdowns),
        "ad_account_id": row.account_id,
        "campaign_id": row.campaign_id,
        "campaign_name": row.campaign_name,
        "adset_id": row.adset_id,
        "adset_name": row.adset_name,
        "ad_id": row.ad_id,
        "ad_name": row.ad_name,
        "date_stop": format_date(row.date_stop),
        "breakdowns_key": context.breakdowns_key or None,
        "breakdowns": _json(row.breakdowns),
        "actions": _json(row.actions),
        "action_values": _json(row.action_values),
        "spend": row.spend,
        "impressions": row.impressions,
        "reach": row.reach,
        "clicks": row.clicks,
        "unique_clicks": row.unique_clicks,
        "inline_link_clicks": row.inline_link_clicks,
        "conversions": row.conversions,
        "purchases": row.purchases,
        "add_to_cart": row.add_to_cart,
        "leads": row.leads,
        "revenue": row.revenue,
        "purchase_roas": _json(row.purchase_roas),
        "cost_per_action_type": _json(row.cost_per_action_type),
        "cpm": row.cpm,
        "cpc": row.cpc,
        "ctr": row.ctr,
        "frequency": row.frequency,
        "objective": row.objective,
        "effective_status": row.effective_status,
        "configured_status": row.configured_status,
        "buying_type": row.buying_type,
        "daily_budget": row.daily_budget,
        "lifetime_budget": row.lifetime_budget,
        "currency": row.currency,
    }


def to_legacy_row(row: NormalizedInsightRow, context: UpsertDailyContext) -> dict[str, Any]:
    """Collapse a row onto the legacy key.

    Hierarchy identifiers that do not exist at the row's level are encoded as
    ``__<level>__`` placeholders, since the legacy key columns are not nullable.
    """
    fill = placeholder(context.level)
    return {
        "tenant_id": context.tenant_id,
        "date": format_date(row.date_start),
        "ad_account_id": row.account_id or context.account_id,
        "campaign_id": row.campaign_id or fill,
        "adset_id": row.adset_id or fill,
        "ad_id": row.ad_id or fill,
        "spend": row.spend,
        "impressions": row.impressions,
        "clicks": row.clicks,
        "purchases": row.purchases,
        "revenue": row.revenue,
    }


def _upsert_sql(table: str, columns: tuple[str, ...], key: tuple[str, ...], *, jsonb: bool) -> str:
    values = ", ".join(
        f"CAST(:{column} AS JSONB)" if jsonb and column in JSON_COLUMNS else f":{column}" for column in columns
    )
    updates = ",\n  ".join(f"{column} = EXCLUDED.{column}" for column in columns if column not in key)
    return (
        f"INSERT INTO {table} ({', '.join(columns)})\n"
        f"VALUES ({values})\n"
        f"ON CONFLICT ({', '.join(key)}) DO UPDATE SET\n  {updates}"
    )


class AdaptiveInsightsStorage:
    def __init__(self, engine: Engine, *, batch_size: int = UPSERT_BATCH_SIZE, table: str = DEFAULT_TABLE) -> None:
        self.engine = engine
        self.batch_size = batch_size
        self.table = table
        self.schema_mode = SchemaMode.UNKNOWN

    async def upsert_daily(self, rows: list[NormalizedInsightRow], context: UpsertDailyContext) -> None:
        if not rows:
            return
        loop = asyncio.get_running_loop()
        for start in range(0, len(rows), self.batch_size):
            batch = rows[start : start + self.batch_size]
            await loop.run_in_executor(None, self._write_batch, batch, context)

    def _write_batch(self, batch: list[NormalizedInsightRow], context: UpsertDailyContext) -> None:
        if self.schema_mode is SchemaMode.LEGACY:
            self._write_legacy(batch, context)
            return
        try:
            self._write_extended(batch, context)
        except SQLAlchemyError as exc:
            if not is_schema_mismatch(exc):
                logger.error(
                    "Failed to upsert %s batch tenant=%s account=%s level=%s breakdowns=%s: %s",
                    self.table,
                    context.tenant_id,
                    context.account_id,
                    context.level,
                    context.breakdowns_key,
                    exc,
                )
                raise
            logger.warning(
                "Extended %s schema unavailable, switching to legacy layout: %s",
                self.table,
                getattr(exc, "orig", exc),
            )
            self.schema_mode = SchemaMode.LEGACY
            self._write_legacy(batch, context)
            return
        if self.schema_mode is SchemaMode.UNKNOWN:
            logger.info("Detected extended %s schema", self.table)
            self.schema_mode = SchemaMode.EXTENDED

    def _write_extended(self, batch: list[NormalizedInsightRow], context: UpsertDailyContext) -> None:
        records = [to_extended_row(row, context) for row in batch]
        with self.engine.begin() as conn:
            self._execute(conn, EXTENDED_COLUMNS, EXTENDED_KEY, records)

    def _write_legacy(self, batch: list[NormalizedInsightRow], context: UpsertDailyContext) -> None:
        records: dict[tuple[Any, ...], dict[str, Any]] = {}
        skipped = 0
        for row in batch:
            if any(value is not None for value in row.breakdowns.values()):
                skipped += 1
                continue
            record = to_legacy_row(row, context)
            records[tuple(record[column] for column in LEGACY_KEY)] = record
        if skipped:
            logger.warning(
                "Legacy %s layout has no breakdown dimension; dropped %d rows for breakdowns=%s",
                self.table,
                skipped,
                context.breakdowns_key,
            )
        if not records:
            return
        with self.engine.begin() as conn:
            self._execute(conn, LEGACY_COLUMNS, LEGACY_KEY, list(records.values()))

    def _execute(
        self,
        conn: Connection,
        columns: tuple[str, ...],
        key: tuple[str, ...],
        records: list[dict[str, Any]],
    ) -> None:
        jsonb = conn.dialect.name == "postgresql"
        conn.execute(text(_upsert_sql(self.table, columns, key, jsonb=jsonb)), records)


