"""Live activity feed - recent bids, price milestones and status changes."""

from __future__ import annotations

from collections import deque
from datetime import datetime, timezone

from auctionlive.models import ActivityEvent, AuctionSnapshot, Bid

MILESTONES = (1000, 5000, 10000, 25000, 50000, 100000)


class ActivityFeed:
    """Bounded, newest-first list of observed activity. Only reports what was observed."""

    def __init__(self, limit: int = 50) -> None:
        self._events: deque[ActivityEvent] = deque(maxlen=limit)
        self._high_water = 0.0
        self._last_status: str | None = None

    def seed(self, snapshot: AuctionSnapshot) -> None:
        """Prime from a full fetch so milestones already passed are not re-announced."""
        self._high_water = max(self._high_water, snapshot.current_price if snapshot.bid_count else 0.0)
        self._last_status = snapshot.status

    def on_bid(self, bid: Bid) -> list[ActivityEvent]:
        added = [
            ActivityEvent(
                id=f"bid-{bid.id}",
                type="bid",
                at=bid.placed_at,
                bidder_id=bid.bidder_id,
                amount=bid.amount,
            )
        ]
        crossed = [m for m in MILESTONES if bid.amount >= m > self._high_water]
        if crossed:
            top = crossed[-1]
            added.append(
                ActivityEvent(
                    id=f"milestone-{top}",
                    type="milestone",
                    at=bid.placed_at,
                    amount=float(top),
                    message=f"Milestone reached: ${top:,}",
                )
            )
        self._high_water = max(self._high_water, bid.amount)
        self._events.extendleft(added)
        return added

    def on_snapshot(self, snapshot: AuctionSnapshot) -> ActivityEvent | None:
        if self._last_status is None or snapshot.status == self._last_status:
            self._last_status = snapshot.status
            return None
        event = ActivityEvent(
            id=f"status-{snapshot.status}-{snapshot.revision}",
            type="status",
            at=datetime.now(timezone.utc),
            message=f"Auction {self._last_status} -> {snapshot.status}",
        )
        self._last_status = snapshot.status
        self._events.appendleft(event)
        return event

    def recent(self, limit: int | None = None) -> list[ActivityEvent]:
        events = list(self._events)
        return events[:limit] if limit is not None else events

    def clear(self) -> None:
        self._events.clear()
        self._high_water = 0.0
        self._last_status = None
