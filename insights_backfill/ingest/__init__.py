"""Ingestion helpers."""

from __future__ import annotations

import pathlib
from typing import Any

import yaml

PRESETS_PATH = pathlib.Path(__file__).with_name("presets.yml")


def load_presets() -> dict[str, dict[str, Any]]:
    data = yaml.safe_load(PRESETS_PATH.read_text()) or {}
    return {name: dict(values or {}) for name, values in data.items()}
