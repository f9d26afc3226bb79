"""Change log recording, replay determinism and golden tests."""

import tempfile
from pathlib import Path

import pytest

from auctionlive.ingestion.normalize import auction_from_row, bid_from_row
from auctionlive.replay.engine import replay_auction, replay_to_pressure_series, replay_to_price_series, stream_change_events
from auctionlive.storage.db import get_connection, init_schema
from auctionlive.storage.event_log import ChangeLogRecorder, log_stats
from auctionlive.storage.export import export_events_to_parquet
from auctionlive.subscription import SubscriptionManager

from conftest import auction_row, bid_row, change


@pytest.fixture
def temp_db():
    tmp = tempfile.mkdtemp()
    path = Path(tmp) / "test.duckdb"
    conn = get_connection(path)
    init_schema(conn)
    yield conn
    conn.close()
    path.unlink(missing_ok=True)
    Path(tmp).rmdir()


@pytest.fixture
def recorded(temp_db):
    """Backfill with one bid, then a new bid, a duplicate, and a higher bid."""
    recorder = ChangeLogRecorder(temp_db, batch_size=1)
    recorder.record_backfill("a1", auction_from_row(auction_row()), [bid_from_row(bid_row("b1", 110.0, 1))], 100)
    b2 = change("bids", bid_row("b2", 120.0, 2, bidder="u2"))
    recorder.record_change("a1", b2, 200)
    recorder.record_change("a1", b2, 300)
    recorder.record_change("a1", change("bids", bid_row("b3", 130.0, 3, bidder="u3")), 400)
    recorder.record_change("a2", change("bids", bid_row("z1", 999.0, 3, auction_id="a2")), 500)
    recorder.flush()
    return temp_db


def test_replay_determinism(recorded):
    """Same log + same params -> identical price series (golden test)."""
    series1 = replay_to_price_series(recorded, "a1")
    series2 = replay_to_price_series(recorded, "a1")
    assert series1 == series2
    assert series1 == [(100, 110.0), (200, 120.0), (300, 120.0), (400, 130.0)]


def test_replay_auction_final_state(recorded):
    store = replay_auction(recorded, "a1")
    snap = store.get_snapshot()
    assert snap.bid_count == 3
    assert snap.highest_bidder_id == "u3"
    assert store.counters["applied"] == 2
    assert store.get_bid("b2").status == "outbid"


def test_replay_time_window(recorded):
    series = replay_to_price_series(recorded, "a1", end_ts=200)
    assert [ts for ts, _ in series] == [100, 200]
    # Without the backfill nothing can be applied.
    assert replay_to_price_series(recorded, "a1", start_ts=200) == [(200, None), (300, None), (400, None)]


def test_replay_pressure_series(recorded):
    levels = replay_to_pressure_series(recorded, "a1")
    assert [ts for ts, _ in levels] == [100, 200, 300, 400]
    assert all(level in ("low", "medium", "high", "extreme") for _, level in levels)


def test_stream_in_log_order(recorded):
    kinds = [kind for kind, _, _ in stream_change_events(recorded, "a1")]
    assert kinds == ["backfill", "change", "change", "change"]


def test_log_stats(recorded):
    stats = log_stats(recorded)
    assert stats["total_events"] == 5
    assert stats["min_ingest_ts"] == 100
    assert stats["max_ingest_ts"] == 500
    by_auction = {row["auction_id"]: row for row in stats["by_auction"]}
    assert by_auction["a1"]["count"] == 4
    assert by_auction["a1"]["backfills"] == 1


def test_recorder_batches(temp_db):
    recorder = ChangeLogRecorder(temp_db, batch_size=10)
    recorder.record_change("a1", change("bids", bid_row("b1", 110.0, 1)), 1)
    assert log_stats(temp_db)["total_events"] == 0
    recorder.flush()
    assert log_stats(temp_db)["total_events"] == 1
    assert recorder.recorded == 1


def test_export_parquet(recorded, tmp_path):
    out = tmp_path / "out" / "a1.parquet"
    assert export_events_to_parquet(recorded, out, auction_id="a1") == 4
    assert out.exists()


async def test_live_session_replays_to_same_snapshot(temp_db, source):
    recorder = ChangeLogRecorder(temp_db, batch_size=1)
    manager = SubscriptionManager(source, request_timeout_sec=1.0, recorder=recorder)
    await manager.start("a1")
    await manager.wait_for_state("live", timeout=1)
    source.push(change("bids", bid_row("b2", 125.0, 20, bidder="u2")), 1)
    source.push(change("bids", bid_row("b2", 125.0, 20, bidder="u2")), 2)
    source.push(change("auctions", auction_row(title="Renamed", updated_at="2026-03-01T12:05:00Z"), "UPDATE"), 3)
    live = manager.get_snapshot()
    await manager.stop()

    replayed = replay_auction(temp_db, "a1").get_snapshot()
    assert replayed.model_dump(exclude={"revision"}) == live.model_dump(exclude={"revision"})
    assert replayed.title == "Renamed"
