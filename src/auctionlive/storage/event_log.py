"""Change log append and query - what the subscription manager applied, for replay and debugging."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import structlog

from auctionlive.models import AuctionSnapshot, Bid

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

log = structlog.get_logger(__name__)

ChangeRow = tuple[str, str, str | None, str | None, int, str]

_INSERT_SQL = """
    INSERT INTO change_events (auction_id, kind, entity_table, operation, ingest_ts, payload)
    VALUES (?, ?, ?, ?, ?, ?)
"""


def prepare_change_row(auction_id: str, raw: dict[str, Any], ingest_ts: int) -> ChangeRow:
    """Build a change_events row from a raw change notification."""
    table = raw.get("table")
    operation = raw.get("type") or raw.get("eventType")
    return (
        auction_id,
        "change",
        str(table) if table is not None else None,
        str(operation).upper() if operation is not None else None,
        ingest_ts,
        json.dumps(raw, default=str),
    )


def prepare_backfill_row(auction_id: str, auction: AuctionSnapshot, bids: list[Bid], ingest_ts: int) -> ChangeRow:
    payload = {
        "auction": auction.model_dump(mode="json"),
        "bids": [b.model_dump(mode="json") for b in bids],
    }
    return (auction_id, "backfill", None, None, ingest_ts, json.dumps(payload))


def append_change_rows(conn: DuckDBPyConnection, rows: list[ChangeRow]) -> None:
    if not rows:
        return
    conn.executemany(_INSERT_SQL, rows)


class ChangeLogRecorder:
    """Batches rows and flushes every `batch_size`; backfills flush immediately."""

    def __init__(self, conn: DuckDBPyConnection, batch_size: int = 100) -> None:
        self.conn = conn
        self.batch_size = batch_size
        self._batch: list[ChangeRow] = []
        self.recorded = 0

    def record_change(self, auction_id: str, raw: dict[str, Any], ingest_ts: int) -> None:
        self._batch.append(prepare_change_row(auction_id, raw, ingest_ts))
        self.recorded += 1
        if len(self._batch) >= self.batch_size:
            self.flush()

    def record_backfill(self, auction_id: str, auction: AuctionSnapshot, bids: list[Bid], ingest_ts: int) -> None:
        self._batch.append(prepare_backfill_row(auction_id, auction, bids, ingest_ts))
        self.recorded += 1
        self.flush()

    def flush(self) -> None:
        if not self._batch:
            return
        append_change_rows(self.conn, self._batch)
        log.debug("change_log_flushed", rows=len(self._batch))
        self._batch = []


def log_stats(conn: DuckDBPyConnection) -> dict[str, Any]:
    """Return change log statistics: total count, min/max ingest_ts, count by auction."""
    total = conn.execute("SELECT COUNT(*) FROM change_events").fetchone()[0]
    range_row = conn.execute("SELECT MIN(ingest_ts), MAX(ingest_ts) FROM change_events").fetchone()
    by_auction = conn.execute(
        """
        SELECT auction_id, COUNT(*) AS cnt, SUM(CASE WHEN kind = 'backfill' THEN 1 ELSE 0 END) AS backfills
        FROM change_events GROUP BY auction_id ORDER BY cnt DESC LIMIT 20
        """
    ).fetchall()
    return {
        "total_events": total,
        "min_ingest_ts": range_row[0],
        "max_ingest_ts": range_row[1],
        "by_auction": [{"auction_id": r[0], "count": r[1], "backfills": int(r[2] or 0)} for r in by_auction],
    }
