"""Bid - a single bid on an auction."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auctionlive.models._time import ensure_utc

BidStatus = Literal["active", "outbid", "winning", "lost"]

# Statuses only the source may assign (seller decision); never overwritten locally.
DECIDED_STATUSES: frozenset[str] = frozenset({"winning", "lost"})


class Bid(BaseModel):
    """Immutable bid record; only status changes, through with_status()."""

    model_config = ConfigDict(frozen=True)

    id: str
    auction_id: str
    bidder_id: str
    amount: float = Field(..., ge=0)
    placed_at: datetime
    status: BidStatus = "active"
    revision: int = 0
    is_auto_bid: bool = False
    max_auto_bid: float | None = None

    @field_validator("placed_at")
    @classmethod
    def placed_at_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def rank_key(self) -> tuple[float, datetime, int]:
        """Ordering of bids: amount, then later placed_at, then higher revision wins."""
        return (self.amount, self.placed_at, self.revision)

    @property
    def is_decided(self) -> bool:
        return self.status in DECIDED_STATUSES

    def with_status(self, status: BidStatus) -> Bid:
        if status == self.status:
            return self
        return self.model_copy(update={"status": status})
