"""Shared fixtures: row builders and an in-memory change source."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from auctionlive.errors import FetchError, TransportError
from auctionlive.ingestion.base import SubscriptionHandle
from auctionlive.ingestion.normalize import auction_from_row, bid_from_row

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def iso(seconds: float) -> str:
    return (T0 + timedelta(seconds=seconds)).isoformat().replace("+00:00", "Z")


def auction_row(auction_id: str = "a1", **overrides: Any) -> dict[str, Any]:
    row = {
        "id": auction_id,
        "title": "Vintage camera",
        "status": "active",
        "seller_id": "seller",
        "starting_price": 100.0,
        "current_price": 100.0,
        "bid_increment": 5.0,
        "bid_count": 0,
        "reserve_price": None,
        "end_time": iso(3600),
        "updated_at": iso(0),
    }
    row.update(overrides)
    return row


def bid_row(bid_id: str, amount: float, at: float, bidder: str = "u1", auction_id: str = "a1", **overrides: Any) -> dict[str, Any]:
    row = {
        "id": bid_id,
        "auction_id": auction_id,
        "bidder_id": bidder,
        "amount": amount,
        "bid_time": iso(at),
        "status": "active",
    }
    row.update(overrides)
    return row


def change(table: str, row: dict[str, Any], op: str = "INSERT") -> dict[str, Any]:
    return {"table": table, "type": op, "schema": "public", "record": row}


class FakeSource:
    """ChangeEventSource backed by in-memory rows; tests drive events and statuses by hand."""

    def __init__(self, auction: dict[str, Any], bids: list[dict[str, Any]] | None = None) -> None:
        self.auction_row = auction
        self.bid_rows = list(bids or [])
        self.auto_ack = True
        self.fail_subscribe = 0
        self.fail_fetch = 0
        self.fail_unsubscribe = False
        self.fetch_gate: asyncio.Event | None = None
        self.subscribe_gate: asyncio.Event | None = None
        self.subscribe_calls = 0
        self.unsubscribed: list[SubscriptionHandle] = []
        self.on_event = None
        self.on_status = None

    async def fetch_auction(self, auction_id: str):
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        if self.fail_fetch:
            self.fail_fetch -= 1
            raise FetchError("auctions read failed: HTTP 503", status_code=503)
        return auction_from_row(self.auction_row)

    async def fetch_bids(self, auction_id: str):
        return [bid_from_row(r) for r in self.bid_rows if r["auction_id"] == auction_id]

    async def subscribe(self, auction_id, on_event, on_status_change):
        self.subscribe_calls += 1
        if self.subscribe_gate is not None:
            await self.subscribe_gate.wait()
        if self.fail_subscribe:
            self.fail_subscribe -= 1
            raise TransportError("connection refused")
        self.on_event = on_event
        self.on_status = on_status_change
        if self.auto_ack:
            asyncio.get_running_loop().call_soon(on_status_change, "SUBSCRIBED", None)
        return SubscriptionHandle(auction_id=auction_id, topic=f"realtime:auction-{auction_id}")

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        self.unsubscribed.append(handle)
        if self.fail_unsubscribe:
            raise TransportError("socket already gone")

    def push(self, raw: dict[str, Any], ingest_ts: int = 0) -> None:
        self.on_event(raw, ingest_ts)


async def until(predicate, tries: int = 200) -> None:
    for _ in range(tries):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def source() -> FakeSource:
    return FakeSource(auction_row(), [bid_row("b1", 110.0, 10, bidder="u1")])


@pytest.fixture
def make_bids():
    """[(seconds_after_T0, bidder_id), ...] -> list[Bid] with rising amounts."""

    def _make(entries: list[tuple[float, str]]):
        return [bid_from_row(bid_row(f"b{i}", 100.0 + i * 10, at, bidder=who)) for i, (at, who) in enumerate(entries)]

    return _make
