"""Auction state machine - load a full fetch, apply change events, keep derived fields consistent."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog

from auctionlive.errors import UnknownEntityError
from auctionlive.models import AuctionSnapshot, Bid, BidStatus, ChangeEvent
from auctionlive.state.revisions import RevisionTable

log = structlog.get_logger(__name__)


@dataclass
class StateDelta:
    """Outcome of one load or event application."""

    applied: bool
    reason: str | None = None
    snapshot: AuctionSnapshot | None = None
    new_bid: Bid | None = None
    status_changes: list[Bid] = field(default_factory=list)
    price_changed: bool = False

    @classmethod
    def skipped(cls, reason: str, snapshot: AuctionSnapshot | None) -> StateDelta:
        return cls(applied=False, reason=reason, snapshot=snapshot)


class AuctionStateStore:
    """In-memory state for one auction. Single writer: callers serialize apply_event/load.

    current_price, bid_count and highest_bidder_id are never taken from the source;
    they are recomputed from the bid set so they always agree with it.
    """

    def __init__(self, auction_id: str, revisions: RevisionTable | None = None) -> None:
        self.auction_id = auction_id
        self.revisions = revisions if revisions is not None else RevisionTable()
        self._snapshot: AuctionSnapshot | None = None
        self._bids: dict[str, Bid] = {}
        self._highest: Bid | None = None
        self._local_revision = 0
        self._warned_before_snapshot = False
        self.counters: dict[str, int] = {"applied": 0, "stale": 0, "foreign": 0, "before_snapshot": 0}

    # --- reads ---

    @property
    def has_snapshot(self) -> bool:
        return self._snapshot is not None

    def get_snapshot(self) -> AuctionSnapshot | None:
        """Frozen model; safe to hand out."""
        return self._snapshot

    def get_bid_history(self, limit: int | None = None) -> list[Bid]:
        """Bids ordered highest-ranked first."""
        bids = sorted(self._bids.values(), key=lambda b: b.rank_key, reverse=True)
        return bids[:limit] if limit is not None else bids

    def get_bid(self, bid_id: str) -> Bid | None:
        return self._bids.get(bid_id)

    @property
    def highest_bid(self) -> Bid | None:
        return self._highest

    # --- writes ---

    def load(self, auction: AuctionSnapshot, bids: list[Bid]) -> StateDelta:
        """Replace all state with an authoritative fetch (initial load or backfill)."""
        if auction.id != self.auction_id:
            log.warning("store_load_mismatch", expected=self.auction_id, got=auction.id)
            return StateDelta.skipped("foreign", self._snapshot)
        previous_price = self._snapshot.current_price if self._snapshot else None
        own = [b for b in bids if b.auction_id == self.auction_id]
        if len(own) != len(bids):
            self.counters["foreign"] += len(bids) - len(own)
        self._bids = {b.id: b for b in own}
        self._highest = max(self._bids.values(), key=lambda b: b.rank_key, default=None)
        changed = self._rerank_statuses()

        entries: dict[tuple[str, str], int] = {("auction", auction.id): auction.record_revision}
        for b in own:
            entries[("bid", b.id)] = b.revision
        self.revisions.reset(entries)

        self._snapshot = self._with_derived(auction)
        self._warned_before_snapshot = False
        log.debug("store_loaded", auction_id=self.auction_id, bids=len(self._bids), revision=self._snapshot.revision)
        return StateDelta(
            applied=True,
            reason="load",
            snapshot=self._snapshot,
            status_changes=changed,
            price_changed=previous_price != self._snapshot.current_price,
        )

    def apply_event(self, event: ChangeEvent) -> StateDelta:
        """Apply one normalized event. Stale, foreign and premature events are skipped, not raised."""
        if event.entity_type not in ("auction", "bid"):
            raise UnknownEntityError(str(event.entity_type))
        if self._snapshot is None:
            self.counters["before_snapshot"] += 1
            if not self._warned_before_snapshot:
                self._warned_before_snapshot = True
                log.warning(
                    "store_event_before_snapshot",
                    auction_id=self.auction_id,
                    msg="Events before first load are not applied; later ones suppressed.",
                )
            return StateDelta.skipped("before_snapshot", None)
        if self.revisions.is_stale(event.entity_type, event.entity_id, event.revision):
            self.counters["stale"] += 1
            return StateDelta.skipped("stale", self._snapshot)

        if event.entity_type == "auction":
            delta = self._apply_auction(event)
        else:
            delta = self._apply_bid(event)
        if delta.applied:
            self.revisions.record(event.entity_type, event.entity_id, event.revision)
            self.counters["applied"] += 1
        return delta

    def _apply_auction(self, event: ChangeEvent) -> StateDelta:
        if event.entity_id != self.auction_id:
            self.counters["foreign"] += 1
            log.debug("store_foreign_auction", expected=self.auction_id, got=event.entity_id)
            return StateDelta.skipped("foreign", self._snapshot)
        changes: dict[str, Any] = event.payload.changes()
        merged = AuctionSnapshot.model_validate(
            {**self._snapshot.model_dump(), **changes, "record_revision": event.revision}
        )
        previous_price = self._snapshot.current_price
        self._snapshot = self._with_derived(merged)
        return StateDelta(
            applied=True,
            snapshot=self._snapshot,
            price_changed=previous_price != self._snapshot.current_price,
        )

    def _apply_bid(self, event: ChangeEvent) -> StateDelta:
        incoming: Bid = event.payload.bid
        if incoming.auction_id != self.auction_id:
            self.counters["foreign"] += 1
            log.debug("store_foreign_bid", expected=self.auction_id, got=incoming.auction_id, bid_id=incoming.id)
            return StateDelta.skipped("foreign", self._snapshot)

        existing = self._bids.get(incoming.id)
        if existing is not None:
            # Amount, bidder, time and rank are fixed at insert; only status may move. The source
            # decides winning/lost; active/outbid always follow the local ranking.
            updated = existing.with_status(incoming.status if incoming.is_decided else self._ranked_status(existing))
            self._bids[updated.id] = updated
            if self._highest is not None and self._highest.id == updated.id:
                self._highest = updated
            self._snapshot = self._with_derived(self._snapshot)
            changes = [updated] if updated.status != existing.status else []
            return StateDelta(applied=True, snapshot=self._snapshot, status_changes=changes)

        return self._insert_bid(incoming)

    def _insert_bid(self, bid: Bid) -> StateDelta:
        previous_price = self._snapshot.current_price
        changed: list[Bid] = []
        prior = self._highest
        if prior is None or bid.rank_key > prior.rank_key:
            if prior is not None and prior.status == "active":
                demoted = prior.with_status("outbid")
                self._bids[demoted.id] = demoted
                changed.append(demoted)
            if not bid.is_decided:
                bid = bid.with_status("active")
            self._highest = bid
        elif not bid.is_decided:
            bid = bid.with_status("outbid")
        self._bids[bid.id] = bid
        self._snapshot = self._with_derived(self._snapshot)
        return StateDelta(
            applied=True,
            snapshot=self._snapshot,
            new_bid=bid,
            status_changes=changed,
            price_changed=previous_price != self._snapshot.current_price,
        )

    def _ranked_status(self, bid: Bid) -> BidStatus:
        return "active" if self._highest is not None and bid.id == self._highest.id else "outbid"

    def _rerank_statuses(self) -> list[Bid]:
        """After a full load: the highest bid is active, every other active bid is outbid."""
        changed = []
        for bid in list(self._bids.values()):
            if bid.is_decided:
                continue
            want = self._ranked_status(bid)
            if bid.status != want:
                updated = bid.with_status(want)
                self._bids[bid.id] = updated
                changed.append(updated)
        if self._highest is not None:
            self._highest = self._bids[self._highest.id]
        return changed

    def _with_derived(self, base: AuctionSnapshot) -> AuctionSnapshot:
        self._local_revision += 1
        highest = self._highest
        return base.model_copy(
            update={
                "current_price": highest.amount if highest is not None else base.starting_price,
                "bid_count": len(self._bids),
                "highest_bidder_id": highest.bidder_id if highest is not None else None,
                "revision": self._local_revision,
            }
        )

    def clear(self) -> None:
        """Drop all state (subscription torn down)."""
        self._snapshot = None
        self._bids = {}
        self._highest = None
        self.revisions.reset()
