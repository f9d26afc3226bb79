"""AuctionSnapshot - authoritative local view of one auction."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auctionlive.models._time import ensure_utc

AuctionStatus = Literal["draft", "scheduled", "active", "ended", "completed", "cancelled"]


class AuctionSnapshot(BaseModel):
    """Immutable snapshot. The store hands out copies; mutate via model_copy only."""

    model_config = ConfigDict(frozen=True)

    id: str
    status: AuctionStatus = "active"
    title: str = ""
    seller_id: str | None = None
    starting_price: float = Field(..., ge=0)
    current_price: float = Field(0.0, ge=0)
    reserve_price: float | None = Field(None, ge=0)
    bid_increment: float = Field(1.0, ge=0)
    bid_count: int = Field(0, ge=0)
    highest_bidder_id: str | None = None
    winner_id: str | None = None
    end_time: datetime | None = None
    revision: int = 0  # local mutation counter
    record_revision: int = 0  # revision of the source row this snapshot was built from

    @field_validator("end_time")
    @classmethod
    def end_time_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @property
    def minimum_next_bid(self) -> float:
        """Lowest amount a new bid must reach to lead the auction."""
        if self.bid_count == 0:
            return self.starting_price
        return self.current_price + self.bid_increment

    @property
    def reserve_met(self) -> bool | None:
        if self.reserve_price is None:
            return None
        return self.bid_count > 0 and self.current_price >= self.reserve_price
