"""Deterministic replay of the change log - rebuild auction state exactly as it was applied."""

from __future__ import annotations

import json
from typing import Any, Iterator

from auctionlive.ingestion.normalize import EventNormalizer
from auctionlive.metrics.pressure import BiddingPressureEngine
from auctionlive.models import AuctionSnapshot, Bid, PressureLevel
from auctionlive.state.revisions import RevisionTable
from auctionlive.state.store import AuctionStateStore, StateDelta


def stream_change_events(
    conn: Any,
    auction_id: str,
    start_ts: int | None = None,
    end_ts: int | None = None,
) -> Iterator[tuple[str, dict[str, Any], int]]:
    """Yield (kind, payload, ingest_ts) for an auction in log order, optionally time-filtered."""
    conditions = ["auction_id = ?"]
    params: list[Any] = [auction_id]
    if start_ts is not None:
        conditions.append("ingest_ts >= ?")
        params.append(start_ts)
    if end_ts is not None:
        conditions.append("ingest_ts <= ?")
        params.append(end_ts)
    where = " AND ".join(conditions)
    rows = conn.execute(
        f"SELECT kind, payload, ingest_ts FROM change_events WHERE {where} ORDER BY id ASC", params
    ).fetchall()
    for kind, payload_json, ingest_ts in rows:
        try:
            payload = json.loads(payload_json) if isinstance(payload_json, str) else payload_json
        except (TypeError, json.JSONDecodeError):
            continue
        yield (kind, payload, ingest_ts)


class _Replayer:
    """Same normalizer + store wiring as the live manager."""

    def __init__(self, auction_id: str) -> None:
        revisions = RevisionTable()
        self.store = AuctionStateStore(auction_id, revisions)
        self.normalizer = EventNormalizer(revisions)

    def apply(self, kind: str, payload: dict[str, Any], ingest_ts: int) -> StateDelta | None:
        if kind == "backfill":
            auction = AuctionSnapshot.model_validate(payload["auction"])
            bids = [Bid.model_validate(b) for b in payload.get("bids", [])]
            return self.store.load(auction, bids)
        event = self.normalizer.normalize(payload, ingest_ts)
        if event is None:
            return None
        return self.store.apply_event(event)


def replay_auction(
    conn: Any,
    auction_id: str,
    start_ts: int | None = None,
    end_ts: int | None = None,
) -> AuctionStateStore:
    """Replay the log into a fresh store and return it."""
    replayer = _Replayer(auction_id)
    for kind, payload, ingest_ts in stream_change_events(conn, auction_id, start_ts, end_ts):
        replayer.apply(kind, payload, ingest_ts)
    return replayer.store


def replay_to_price_series(
    conn: Any,
    auction_id: str,
    start_ts: int | None = None,
    end_ts: int | None = None,
) -> list[tuple[int, float | None]]:
    """
    Replay and return [(ingest_ts, current_price), ...], one point per log row.
    Deterministic: same DB + params -> same output.
    """
    replayer = _Replayer(auction_id)
    out: list[tuple[int, float | None]] = []
    for kind, payload, ingest_ts in stream_change_events(conn, auction_id, start_ts, end_ts):
        replayer.apply(kind, payload, ingest_ts)
        snap = replayer.store.get_snapshot()
        out.append((ingest_ts, snap.current_price if snap else None))
    return out


def replay_to_pressure_series(
    conn: Any,
    auction_id: str,
    start_ts: int | None = None,
    end_ts: int | None = None,
) -> list[tuple[int, PressureLevel]]:
    """Replay and return [(ingest_ts, pressure level)], evaluating windows at each row's ingest time."""
    replayer = _Replayer(auction_id)
    engine = BiddingPressureEngine()
    out: list[tuple[int, PressureLevel]] = []
    for kind, payload, ingest_ts in stream_change_events(conn, auction_id, start_ts, end_ts):
        delta = replayer.apply(kind, payload, ingest_ts)
        if delta is not None and delta.applied:
            if kind == "backfill":
                engine.reset(replayer.store.get_bid_history())
            elif delta.new_bid is not None:
                b = delta.new_bid
                engine.add(b.placed_at.timestamp(), b.bidder_id)
        out.append((ingest_ts, engine.current_metric(now=ingest_ts / 1000).level))
    return out
