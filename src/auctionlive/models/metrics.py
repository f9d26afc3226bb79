"""PressureMetric and ActivityEvent - derived, never persisted."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

PressureLevel = Literal["low", "medium", "high", "extreme"]
PressureTrend = Literal["increasing", "stable", "decreasing"]


class PressureMetric(BaseModel):
    """Bidding intensity over trailing 1/5/15 minute windows."""

    level: PressureLevel = "low"
    bids_last_minute: int = 0
    bids_last_5_minutes: int = 0
    bids_last_15_minutes: int = 0
    average_bid_interval: float = Field(0.0, description="Mean seconds between consecutive bids in window")
    active_bidders: int = 0
    trend: PressureTrend = "stable"
    intensity_score: int = Field(0, ge=0, le=100)
    is_heating: bool = False
    last_bid_at: datetime | None = None
    description: str = "No recent bidding activity"


class ActivityEvent(BaseModel):
    """One entry in the live activity feed."""

    id: str
    type: Literal["bid", "milestone", "status"]
    at: datetime
    bidder_id: str | None = None
    amount: float | None = None
    message: str = ""
