"""Ingestion data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any

from insights_backfill.ingest.errors import ConfigurationError


@dataclass(frozen=True, slots=True)
class RunnerConfiguration:
    levels: tuple[str, ...]
    breakdown_keys: tuple[str, ...]
    action_report_times: tuple[str, ...]
    attribution_windows: tuple[str, ...]

    def __post_init__(self) -> None:
        for name in ("levels", "breakdown_keys", "action_report_times", "attribution_windows"):
            if not getattr(self, name):
                raise ConfigurationError(f"Resolved {name} is empty")


@dataclass(frozen=True, slots=True)
class MatrixCombination:
    level: str
    breakdown_key: str
    breakdowns: str
    action_report_time: str
    attribution_window: str

    @property
    def breakdown_names(self) -> list[str]:
        return [name for name in self.breakdowns.split(",") if name]


@dataclass(frozen=True, slots=True)
class ChunkConfig:
    month_since: date
    month_until: date


@dataclass(frozen=True, slots=True)
class WorkItem:
    combination: MatrixCombination
    chunk: ChunkConfig


@dataclass(slots=True)
class NormalizedInsightRow:
    date_start: date
    date_stop: date
    entity_id: str
    account_id: str | None = None
    campaign_id: str | None = None
    campaign_name: str | None = None
    adset_id: str | None = None
    adset_name: str | None = None
    ad_id: str | None = None
    ad_name: str | None = None
    currency: str | None = None
    spend: float | None = None
    impressions: float | None = None
    reach: float | None = None
    clicks: float | None = None
    unique_clicks: float | None = None
    inline_link_clicks: float | None = None
    conversions: float | None = None
    purchases: float | None = None
    add_to_cart: float | None = None
    leads: float | None = None
    revenue: float | None = None
    purchase_roas: list[Any] | None = None
    cost_per_action_type: list[Any] | None = None
    cpm: float | None = None
    cpc: float | None = None
    ctr: float | None = None
    frequency: float | None = None
    objective: str | None = None
    effective_status: str | None = None
    configured_status: str | None = None
    buying_type: str | None = None
    daily_budget: float | None = None
    lifetime_budget: float | None = None
    actions: list[Any] | None = None
    action_values: list[Any] | None = None
    breakdowns: dict[str, str | None] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class UpsertDailyContext:
    tenant_id: str
    account_id: str
    level: str
    action_report_time: str
    attribution_window: str
    breakdowns_key: str
    breakdown_keys: tuple[str, ...] = ()
