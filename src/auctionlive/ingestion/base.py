"""Change event source protocol - the four capabilities the core consumes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Protocol

from auctionlive.models import AuctionSnapshot, Bid

# Transport-reported channel states (mirrors Realtime channel statuses).
TransportStatus = Literal["SUBSCRIBED", "DISCONNECTED", "CHANNEL_ERROR", "TIMED_OUT", "CLOSED"]

RawEventCallback = Callable[[dict[str, Any], int], None]
StatusCallback = Callable[[TransportStatus, "Exception | None"], None]


@dataclass
class SubscriptionHandle:
    """Opaque token returned by subscribe(); sources may hang their own state off `extra`."""

    auction_id: str
    topic: str
    extra: dict[str, Any] = field(default_factory=dict)


class ChangeEventSource(Protocol):
    """External change-data-capture capability. Implement for each backend."""

    async def fetch_auction(self, auction_id: str) -> AuctionSnapshot:
        """Full read of the auction row. Raises FetchError."""
        ...

    async def fetch_bids(self, auction_id: str) -> list[Bid]:
        """Full read of the auction's bids. Raises FetchError."""
        ...

    async def subscribe(
        self,
        auction_id: str,
        on_event: RawEventCallback,
        on_status_change: StatusCallback,
    ) -> SubscriptionHandle:
        """Open a push channel. on_event(raw, ingest_ts_ms) per change; statuses via on_status_change."""
        ...

    async def unsubscribe(self, handle: SubscriptionHandle) -> None: ...
