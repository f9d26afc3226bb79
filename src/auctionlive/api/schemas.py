"""Pydantic schemas for API request/response consistency and OpenAPI docs."""

from __future__ import annotations

from pydantic import BaseModel, Field

from auctionlive.models import ActivityEvent, AuctionSnapshot, Bid


# --- Health ---
class HealthResponse(BaseModel):
    status: str = "ok"
    watched: int = 0


# --- Error (consistent shape for 4xx/5xx) ---
class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Human-readable message")
    code: str | None = Field(None, description="Machine-readable code, e.g. not_watched, no_snapshot")


# --- Subscriptions ---
class SubscriptionStatusResponse(BaseModel):
    auction_id: str
    state: str
    stale: bool
    last_error: str | None = None
    counters: dict[str, int] = Field(default_factory=dict)


class SubscriptionListResponse(BaseModel):
    subscriptions: list[SubscriptionStatusResponse]
    total: int


class UnwatchResponse(BaseModel):
    auction_id: str
    stopped: bool


# --- Auction state ---
class SnapshotResponse(BaseModel):
    snapshot: AuctionSnapshot
    stale: bool
    minimum_next_bid: float
    reserve_met: bool | None = None


class BidHistoryResponse(BaseModel):
    auction_id: str
    bids: list[Bid]
    total: int


class ActivityResponse(BaseModel):
    auction_id: str
    events: list[ActivityEvent]
