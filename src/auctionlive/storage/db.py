"""DuckDB connection and schema init."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import duckdb

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

SCHEMA_SQL = """
CREATE SEQUENCE IF NOT EXISTS change_seq START 1;

-- Applied change log (append-only): raw change events and backfill fetches, in application order
CREATE TABLE IF NOT EXISTS change_events (
    id              BIGINT PRIMARY KEY DEFAULT nextval('change_seq'),
    auction_id      VARCHAR NOT NULL,
    kind            VARCHAR NOT NULL,
    entity_table    VARCHAR,
    operation       VARCHAR,
    ingest_ts       BIGINT NOT NULL,
    payload         JSON NOT NULL
);
"""


def get_connection(db_path: str | Path, read_only: bool = False) -> DuckDBPyConnection:
    """Return a DuckDB connection. Caller must close or use as context manager.
    Use read_only=True when another process may be writing (e.g. auctionlive watch --record)."""
    path = Path(db_path)
    if not read_only:
        path.parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(str(path), read_only=read_only)


def init_schema(conn: DuckDBPyConnection) -> None:
    """Create tables and sequences if they do not exist."""
    for stmt in SCHEMA_SQL.split(";"):
        stmt = stmt.strip()
        if stmt:
            try:
                conn.execute(stmt)
            except duckdb.Error as e:
                if "already exists" not in str(e).lower():
                    raise
