"""Subscription lifecycle: one manager per auction, owned by an explicit registry."""

from auctionlive.subscription.manager import SubscriptionManager, SubscriptionState, backoff_delay
from auctionlive.subscription.registry import AuctionRegistry

__all__ = ["AuctionRegistry", "SubscriptionManager", "SubscriptionState", "backoff_delay"]
