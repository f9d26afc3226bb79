"""AuctionRegistry - owns one isolated SubscriptionManager per watched auction."""

from __future__ import annotations

from typing import Any, Iterator

import structlog

from auctionlive.config.settings import Settings
from auctionlive.ingestion.base import ChangeEventSource
from auctionlive.subscription.manager import ChangeRecorder, SubscriptionManager

log = structlog.get_logger(__name__)


class AuctionRegistry:
    """Created by the composition root (CLI command, API app); never a module global.

    Managers share the source (a stateless capability) but no auction state.
    """

    def __init__(self, source: ChangeEventSource, **manager_kwargs: Any) -> None:
        self.source = source
        self._manager_kwargs = manager_kwargs
        self._managers: dict[str, SubscriptionManager] = {}

    @classmethod
    def from_settings(
        cls,
        source: ChangeEventSource,
        settings: Settings,
        recorder: ChangeRecorder | None = None,
    ) -> AuctionRegistry:
        return cls(
            source,
            reconnect_base_delay_sec=settings.reconnect_base_delay_sec,
            reconnect_max_delay_sec=settings.reconnect_max_delay_sec,
            reconnect_max_retries=settings.reconnect_max_retries,
            request_timeout_sec=settings.request_timeout_sec,
            activity_limit=settings.activity_limit,
            recorder=recorder,
        )

    async def watch(self, auction_id: str) -> SubscriptionManager:
        """Start (or return the running) manager for auction_id."""
        manager = self._managers.get(auction_id)
        if manager is not None and manager.subscription_state() != "closed":
            return manager
        manager = SubscriptionManager(self.source, **self._manager_kwargs)
        self._managers[auction_id] = manager
        await manager.start(auction_id)
        log.info("registry_watch", auction_id=auction_id, watched=len(self._managers))
        return manager

    async def unwatch(self, auction_id: str) -> bool:
        manager = self._managers.pop(auction_id, None)
        if manager is None:
            return False
        await manager.stop()
        log.info("registry_unwatch", auction_id=auction_id, watched=len(self._managers))
        return True

    def get(self, auction_id: str) -> SubscriptionManager | None:
        return self._managers.get(auction_id)

    def auction_ids(self) -> list[str]:
        return list(self._managers)

    def __contains__(self, auction_id: object) -> bool:
        return auction_id in self._managers

    def __iter__(self) -> Iterator[SubscriptionManager]:
        return iter(list(self._managers.values()))

    def __len__(self) -> int:
        return len(self._managers)

    async def close(self) -> None:
        for auction_id in list(self._managers):
            await self.unwatch(auction_id)
