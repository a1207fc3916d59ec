"""Database engine helpers."""

from __future__ import annotations

import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url

from insights_backfill.ingest.errors import ConfigurationError


def database_url() -> str:
    url = os.environ.get("DATABASE_URL", "").strip()
    if not url:
        raise ConfigurationError("DATABASE_URL is not set")
    return url


def create_engine_from_env() -> Engine:
    """Create an engine for ``DATABASE_URL``.

    Storage batches are written from executor threads, so SQLite connections
    are opened without the same-thread check.
    """
    url = make_url(database_url())
    connect_args = {"check_same_thread": False} if url.get_backend_name() == "sqlite" else {}
    return create_engine(url, pool_pre_ping=True, future=True, connect_args=connect_args)
