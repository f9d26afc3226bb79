"""Bidding pressure - rolling 1/5/15 minute bid counts, maintained incrementally."""

from __future__ import annotations

import bisect
import time
from collections import Counter, deque
from datetime import datetime, timezone
from typing import Callable, Iterable

from auctionlive.models import Bid, PressureLevel, PressureMetric, PressureTrend

MINUTE = 60.0
WINDOW_1M = 1 * MINUTE
WINDOW_5M = 5 * MINUTE
WINDOW_10M = 10 * MINUTE  # only used for the trend's previous 5-minute slice
WINDOW_15M = 15 * MINUTE


def classify(bids_last_minute: int, bids_last_5_minutes: int, bids_last_15_minutes: int) -> PressureLevel:
    if bids_last_minute >= 5:
        return "extreme"
    if bids_last_minute >= 3 or bids_last_5_minutes >= 8:
        return "high"
    if bids_last_5_minutes >= 3 or bids_last_15_minutes >= 6:
        return "medium"
    return "low"


def trend(current: int, previous: int) -> PressureTrend:
    """Last 5 minutes compared with the 5 minutes before."""
    if current > previous * 1.5:
        return "increasing"
    if current < previous * 0.7:
        return "decreasing"
    return "stable"


def intensity_score(bids_last_minute: int, bids_last_5_minutes: int, average_interval_sec: float) -> int:
    """0-100: 15 points per bid in the last minute, 5 per bid in 5 minutes, plus a bonus for short intervals."""
    score = bids_last_minute * 15 + bids_last_5_minutes * 5
    interval = round(average_interval_sec)
    if 0 < interval < 300:
        score += max(0, 50 - interval)
    return min(100, score)


def _describe(level: PressureLevel, b1: int, b5: int, b15: int) -> str:
    if level == "extreme":
        return f"Extreme activity: {b1} bids in last minute"
    if level == "high":
        return f"High activity: {b5} bids in last 5 minutes"
    if level == "medium":
        return f"Moderate activity: {b15} bids in last 15 minutes"
    if b15 > 0:
        return f"Calm bidding: {b15} recent bids"
    return "No recent bidding activity"


class SlidingWindow:
    """Time-ordered deque of (timestamp, bidder_id) no older than `span` seconds."""

    __slots__ = ("span", "entries")

    def __init__(self, span: float) -> None:
        self.span = span
        self.entries: deque[tuple[float, str]] = deque()

    def add(self, ts: float, bidder_id: str) -> None:
        entry = (ts, bidder_id)
        if not self.entries or ts >= self.entries[-1][0]:
            self.entries.append(entry)
        else:
            # Late delivery: keep the deque ordered.
            bisect.insort(self.entries, entry)

    def evict(self, now: float) -> list[tuple[float, str]]:
        evicted = []
        while self.entries and now - self.entries[0][0] > self.span:
            evicted.append(self.entries.popleft())
        return evicted

    def clear(self) -> None:
        self.entries.clear()

    def __len__(self) -> int:
        return len(self.entries)


class BiddingPressureEngine:
    """Incremental pressure metrics. O(1) amortized per bid; never rescans history."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._w1 = SlidingWindow(WINDOW_1M)
        self._w5 = SlidingWindow(WINDOW_5M)
        self._w10 = SlidingWindow(WINDOW_10M)
        self._w15 = SlidingWindow(WINDOW_15M)
        self._windows = (self._w1, self._w5, self._w10, self._w15)
        self._bidders: Counter[str] = Counter()
        self._last_bid_ts: float | None = None

    def add(self, ts: float, bidder_id: str) -> None:
        for w in self._windows:
            w.add(ts, bidder_id)
        self._bidders[bidder_id] += 1
        if self._last_bid_ts is None or ts > self._last_bid_ts:
            self._last_bid_ts = ts

    def on_bid_applied(self, bid: Bid) -> PressureMetric:
        self.add(bid.placed_at.timestamp(), bid.bidder_id)
        return self.current_metric()

    def reset(self, bids: Iterable[Bid] = ()) -> PressureMetric:
        """Reseed from a full bid list (after a backfill)."""
        for w in self._windows:
            w.clear()
        self._bidders.clear()
        self._last_bid_ts = None
        for bid in sorted(bids, key=lambda b: b.placed_at):
            self.add(bid.placed_at.timestamp(), bid.bidder_id)
        return self.current_metric()

    def _evict(self, now: float) -> None:
        self._w1.evict(now)
        self._w5.evict(now)
        self._w10.evict(now)
        for _, bidder_id in self._w15.evict(now):
            self._bidders[bidder_id] -= 1
            if self._bidders[bidder_id] <= 0:
                del self._bidders[bidder_id]

    def current_metric(self, now: float | None = None) -> PressureMetric:
        if now is None:
            now = self._clock()
        self._evict(now)
        b1, b5, b10, b15 = len(self._w1), len(self._w5), len(self._w10), len(self._w15)
        last_bid_at = (
            datetime.fromtimestamp(self._last_bid_ts, tz=timezone.utc) if self._last_bid_ts is not None else None
        )
        if b15 == 0:
            return PressureMetric(last_bid_at=last_bid_at)

        # Mean of consecutive deltas telescopes to (newest - oldest) / (n - 1).
        entries = self._w15.entries
        avg = (entries[-1][0] - entries[0][0]) / (b15 - 1) if b15 >= 2 else 0.0
        level = classify(b1, b5, b15)
        if level in ("extreme", "high"):
            heating = True
        elif level == "medium":
            heating = b5 > b15 / 3
        else:
            heating = False
        return PressureMetric(
            level=level,
            bids_last_minute=b1,
            bids_last_5_minutes=b5,
            bids_last_15_minutes=b15,
            average_bid_interval=round(avg, 3),
            active_bidders=len(self._bidders),
            trend=trend(b5, b10 - b5),
            intensity_score=intensity_score(b1, b5, avg),
            is_heating=heating,
            last_bid_at=last_bid_at,
            description=_describe(level, b1, b5, b15),
        )
