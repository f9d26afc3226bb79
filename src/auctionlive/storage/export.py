"""Export the change log to Parquet."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection


def export_events_to_parquet(
    conn: DuckDBPyConnection,
    output_path: str | Path,
    auction_id: str | None = None,
) -> int:
    """Write change_events (optionally one auction) to Parquet in log order. Returns row count."""
    path = Path(output_path).resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    target = str(path).replace("'", "''")
    where: str = ""
    params: list[Any] = []
    if auction_id:
        where, params = "WHERE auction_id = ?", [auction_id]
    conn.execute(f"COPY (SELECT * FROM change_events {where} ORDER BY id) TO '{target}' (FORMAT PARQUET)", params)
    return conn.execute(f"SELECT COUNT(*) FROM change_events {where}", params).fetchone()[0]
