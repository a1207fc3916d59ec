"""Create the extended meta_insights_daily schema."""

from __future__ import annotations

import logging
import pathlib
import sys
from typing import Iterable

from dotenv import load_dotenv
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import ArgumentError, SQLAlchemyError

from insights_backfill.db.session import create_engine_from_env
from insights_backfill.ingest.errors import ConfigurationError

logger = logging.getLogger(__name__)

SCHEMA_PATH = pathlib.Path(__file__).with_name("schema.sql")


def run_migrations(engine: Engine, path: pathlib.Path = SCHEMA_PATH) -> int:
    """Apply ``path`` to the database and return the number of statements run."""
    statements = list(_load_statements(path.read_text()))
    with engine.begin() as conn:
        for stmt in statements:
            conn.execute(text(stmt))
    logger.info("Applied %d statements from %s", len(statements), path.name)
    return len(statements)


def _load_statements(sql: str) -> Iterable[str]:
    buffer: list[str] = []
    for line in sql.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("--"):
            continue
        buffer.append(line)
        if stripped.endswith(";"):
            yield "\n".join(buffer)
            buffer.clear()
    if buffer:
        yield "\n".join(buffer)


def main() -> None:
    load_dotenv()
    logging.basicConfig(level=logging.INFO)
    try:
        engine = create_engine_from_env()
    except (ConfigurationError, ArgumentError, ImportError) as exc:
        print(f"Database configuration error: {exc}", file=sys.stderr)
        sys.exit(1)
    try:
        run_migrations(engine, SCHEMA_PATH)
    except SQLAlchemyError as exc:
        print(f"Migration failed: {exc}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
