"""Canonical schema (Pydantic) - AuctionSnapshot, Bid, ChangeEvent, PressureMetric."""

from auctionlive.models.auction import AuctionSnapshot, AuctionStatus
from auctionlive.models.bid import Bid, BidStatus
from auctionlive.models.events import AuctionChange, BidChange, ChangeEvent, EntityType, Operation
from auctionlive.models.metrics import ActivityEvent, PressureLevel, PressureMetric, PressureTrend

__all__ = [
    "AuctionSnapshot",
    "AuctionStatus",
    "Bid",
    "BidStatus",
    "ChangeEvent",
    "AuctionChange",
    "BidChange",
    "EntityType",
    "Operation",
    "PressureMetric",
    "PressureLevel",
    "PressureTrend",
    "ActivityEvent",
]
