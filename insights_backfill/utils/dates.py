"""Datetime helpers."""

from __future__ import annotations

import os
from datetime import date, datetime

import pendulum

from insights_backfill.ingest.errors import ConfigurationError, InvalidRangeError
from insights_backfill.ingest.models import ChunkConfig

DEFAULT_TZ = "UTC"


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def now_in_tz() -> pendulum.DateTime:
    tz = pendulum.timezone(timezone_name())
    return pendulum.now(tz)


def today_in_tz() -> date:
    return now_in_tz().date()


def parse_iso_date(value: str) -> date:
    try:
        return pendulum.parse(value).date()
    except ValueError as exc:
        raise ConfigurationError(f"Invalid date: {value}") from exc


def format_date(value: date) -> str:
    return value.strftime("%Y-%m-%d")


def to_utc_date(value: date | datetime | str) -> pendulum.Date:
    """Reduce a date-like value to a calendar day at midnight UTC."""
    if isinstance(value, str):
        value = parse_iso_date(value)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = pendulum.instance(value).in_timezone("UTC")
        value = value.date()
    return pendulum.date(value.year, value.month, value.day)


def enumerate_chunks(
    since: date | datetime | str,
    until: date | datetime | str,
    chunk_size: int = 1,
) -> list[ChunkConfig]:
    """Split ``[since, until]`` into calendar-month aligned chunks.

    The first chunk starts at ``since``. Every chunk ends on the last day of
    the ``chunk_size``-month window starting at the cursor's month, or at
    ``until`` when that comes first, and the next chunk starts the day after.
    """
    if chunk_size < 1:
        raise ConfigurationError(f"chunk_size must be >= 1, got {chunk_size}")
    start = to_utc_date(since)
    end = to_utc_date(until)
    if end < start:
        raise InvalidRangeError(f"until ({format_date(end)}) must be on or after since ({format_date(start)})")

    chunks: list[ChunkConfig] = []
    cursor = start
    while cursor <= end:
        window_end = cursor.start_of("month").add(months=chunk_size).subtract(days=1)
        chunk_end = min(window_end, end)
        chunks.append(ChunkConfig(month_since=cursor, month_until=chunk_end))
        cursor = chunk_end.add(days=1)
    return chunks


def months_between(since: date, until: date) -> int:
    """Number of calendar months touched by ``[since, until]``."""
    return (until.year - since.year) * 12 + (until.month - since.month) + 1
