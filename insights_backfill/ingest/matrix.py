"""Reporting dimension matrix for Meta insights backfills."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from insights_backfill.ingest import load_presets
from insights_backfill.ingest.errors import ConfigurationError
from insights_backfill.ingest.models import MatrixCombination, RunnerConfiguration

logger = logging.getLogger(__name__)

LEVELS = ("account", "campaign", "adset", "ad")
ACTION_REPORT_TIMES = ("impression", "conversion")
ATTRIBUTION_WINDOWS = ("1d_click", "7d_click", "1d_view")

BREAKDOWN_SETS: dict[str, str] = {
    "none": "",
    "A": "publisher_platform,platform_position",
    "B": "age,gender",
    "C": "country",
    "D": "device_platform",
    "E": "region",
}

DEFAULT_PRESET = "full"


def _resolve_dimension(name: str, override: Iterable[str] | None, allowed: Sequence[str]) -> tuple[str, ...]:
    if not override:
        return tuple(allowed)
    resolved: list[str] = []
    for value in override:
        value = value.strip()
        if value not in allowed:
            logger.debug("Dropping unknown %s value %r", name, value)
            continue
        if value not in resolved:
            resolved.append(value)
    return tuple(resolved) if resolved else tuple(allowed)


def resolve_runner_configuration(
    levels: Iterable[str] | None = None,
    breakdown_keys: Iterable[str] | None = None,
    action_report_times: Iterable[str] | None = None,
    attribution_windows: Iterable[str] | None = None,
) -> RunnerConfiguration:
    """Resolve operator overrides against the known dimension values.

    Unknown values are dropped; a dimension whose override ends up empty falls
    back to every default value instead of silently skipping data.
    """
    return RunnerConfiguration(
        levels=_resolve_dimension("level", levels, LEVELS),
        breakdown_keys=_resolve_dimension("breakdown key", breakdown_keys, tuple(BREAKDOWN_SETS)),
        action_report_times=_resolve_dimension("action report time", action_report_times, ACTION_REPORT_TIMES),
        attribution_windows=_resolve_dimension("attribution window", attribution_windows, ATTRIBUTION_WINDOWS),
    )


def resolve_preset(
    name: str = DEFAULT_PRESET,
    *,
    levels: Iterable[str] | None = None,
    breakdown_keys: Iterable[str] | None = None,
    action_report_times: Iterable[str] | None = None,
    attribution_windows: Iterable[str] | None = None,
) -> RunnerConfiguration:
    presets = load_presets()
    if name not in presets:
        raise ConfigurationError(f"Unknown preset {name!r}; expected one of {sorted(presets)}")
    preset = presets[name] or {}
    return resolve_runner_configuration(
        levels=levels or preset.get("levels"),
        breakdown_keys=breakdown_keys or preset.get("breakdown_keys"),
        action_report_times=action_report_times or preset.get("action_report_times"),
        attribution_windows=attribution_windows or preset.get("attribution_windows"),
    )


def build_matrix_combinations(config: RunnerConfiguration) -> list[MatrixCombination]:
    combinations: list[MatrixCombination] = []
    for level in config.levels:
        for breakdown_key in config.breakdown_keys:
            for action_report_time in config.action_report_times:
                for attribution_window in config.attribution_windows:
                    combinations.append(
                        MatrixCombination(
                            level=level,
                            breakdown_key=breakdown_key,
                            breakdowns=BREAKDOWN_SETS[breakdown_key],
                            action_report_time=action_report_time,
                            attribution_window=attribution_window,
                        )
                    )
    return combinations
