"""Auction state store and revision tracking."""

from auctionlive.state.revisions import RevisionTable
from auctionlive.state.store import AuctionStateStore, StateDelta

__all__ = ["AuctionStateStore", "RevisionTable", "StateDelta"]
