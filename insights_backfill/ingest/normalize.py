"""Request parameters and row normalization for Meta insights."""

from __future__ import annotations

import hashlib
import json
import math
from collections.abc import Callable, Mapping
from datetime import date
from typing import Any

from insights_backfill.ingest.models import NormalizedInsightRow
from insights_backfill.utils.dates import format_date, parse_iso_date, today_in_tz

HIERARCHY = ("account", "campaign", "adset", "ad")

ACCOUNT_FIELDS = (
    "account_id",
    "date_start",
    "date_stop",
    "impressions",
    "reach",
    "clicks",
    "unique_clicks",
    "inline_link_clicks",
    "spend",
    "cpm",
    "cpc",
    "ctr",
    "actions",
    "action_values",
    "purchase_roas",
    "cost_per_action_type",
    "frequency",
    "account_currency",
)

ENTITY_FIELDS = (
    "account_id",
    "campaign_id",
    "campaign_name",
    "adset_id",
    "adset_name",
    "ad_id",
    "ad_name",
) + ACCOUNT_FIELDS[1:]

PAGE_LIMIT = 500


def build_params(
    *,
    level: str,
    since: date,
    until: date,
    breakdowns: str | None,
    action_report_time: str,
    attribution_window: str,
) -> dict[str, Any]:
    params: dict[str, Any] = {
        "fields": ",".join(ACCOUNT_FIELDS if level == "account" else ENTITY_FIELDS),
        "level": level,
        "time_range": {"since": format_date(since), "until": format_date(until)},
        "time_increment": 1,
        "limit": PAGE_LIMIT,
        "action_report_time": action_report_time,
        "action_attribution_windows": [attribution_window],
    }
    if breakdowns:
        params["breakdowns"] = breakdowns
    return params


def hash_breakdowns(breakdowns: Mapping[str, str | None]) -> str:
    """Stable sha1 of the breakdown slice, ignoring key order.

    Missing values hash as JSON ``null`` so a slice row never shares a key
    with the unbroken-down row of the same entity.
    """
    entries = sorted([key, value] for key, value in breakdowns.items())
    payload = json.dumps(entries, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


def parse_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _as_list(value: Any) -> list[Any] | None:
    return value if isinstance(value, list) else None


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _matches(needle: str) -> Callable[[str], bool]:
    return lambda action_type: needle in action_type.lower()


def extract_action_count(actions: list[Any] | None, predicate: Callable[[str], bool]) -> float | None:
    """Count of the first matching action entry; matches are never summed."""
    if not actions:
        return None
    for entry in actions:
        if not isinstance(entry, Mapping):
            continue
        if not predicate(_as_str(entry.get("action_type")) or ""):
            continue
        raw = entry.get("value")
        if raw is None:
            raw = entry.get("count")
        if raw is None:
            raw = entry.get("1")
        parsed = parse_number(raw)
        if parsed is not None:
            return parsed
    return None


def extract_action_value(actions: list[Any] | None, predicate: Callable[[str], bool]) -> float | None:
    if not actions:
        return None
    for entry in actions:
        if not isinstance(entry, Mapping):
            continue
        if not predicate(_as_str(entry.get("action_type")) or ""):
            continue
        parsed = parse_number(entry.get("value"))
        if parsed is not None:
            return parsed
    return None


def derive_entity_id(level: str, row: Mapping[str, Any]) -> str | None:
    if level not in HIERARCHY:
        return None
    return _as_str(row.get(f"{level}_id")) or None


def _parse_row_date(value: Any) -> date:
    if isinstance(value, str) and value:
        return parse_iso_date(value)
    return today_in_tz()


def normalize_row(
    row: Mapping[str, Any],
    *,
    level: str,
    breakdown_keys: list[str] | tuple[str, ...] = (),
) -> NormalizedInsightRow | None:
    """Map one raw insights record to a :class:`NormalizedInsightRow`.

    Returns ``None`` when the record lacks the identifier for ``level``.
    Identifiers and names of levels finer than ``level`` are left as ``None``.
    """
    entity_id = derive_entity_id(level, row)
    if not entity_id:
        return None

    depth = HIERARCHY.index(level)

    def scoped(entity: str, key: str) -> str | None:
        if HIERARCHY.index(entity) > depth:
            return None
        return _as_str(row.get(key))

    breakdowns: dict[str, str | None] = {}
    for key in breakdown_keys:
        value = row.get(key)
        breakdowns[key] = None if value is None else str(value)

    actions = _as_list(row.get("actions"))
    action_values = _as_list(row.get("action_values"))

    return NormalizedInsightRow(
        date_start=_parse_row_date(row.get("date_start")),
        date_stop=_parse_row_date(row.get("date_stop")),
        entity_id=entity_id,
        account_id=scoped("account", "account_id"),
        campaign_id=scoped("campaign", "campaign_id"),
        campaign_name=scoped("campaign", "campaign_name"),
        adset_id=scoped("adset", "adset_id"),
        adset_name=scoped("adset", "adset_name"),
        ad_id=scoped("ad", "ad_id"),
        ad_name=scoped("ad", "ad_name"),
        currency=_as_str(row.get("account_currency")),
        spend=parse_number(row.get("spend")),
        impressions=parse_number(row.get("impressions")),
        reach=parse_number(row.get("reach")),
        clicks=parse_number(row.get("clicks")),
        unique_clicks=parse_number(row.get("unique_clicks")),
        inline_link_clicks=parse_number(row.get("inline_link_clicks")),
        conversions=parse_number(row.get("conversions")),
        purchases=extract_action_count(actions, _matches("purchase")),
        add_to_cart=extract_action_count(actions, _matches("add_to_cart")),
        leads=extract_action_count(actions, _matches("lead")),
        revenue=extract_action_value(action_values, _matches("purchase")),
        purchase_roas=_as_list(row.get("purchase_roas")),
        cost_per_action_type=_as_list(row.get("cost_per_action_type")),
        cpm=parse_number(row.get("cpm")),
        cpc=parse_number(row.get("cpc")),
        ctr=parse_number(row.get("ctr")),
        frequency=parse_number(row.get("frequency")),
        objective=_as_str(row.get("objective")),
        effective_status=_as_str(row.get("campaign_effective_status")),
        configured_status=_as_str(row.get("campaign_status")),
        buying_type=_as_str(row.get("buying_type")),
        daily_budget=parse_number(row.get("daily_budget")),
        lifetime_budget=parse_number(row.get("lifetime_budget")),
        actions=actions,
        action_values=action_values,
        breakdowns=breakdowns,
    )
