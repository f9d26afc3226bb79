"""SupabaseSource - ChangeEventSource over PostgREST and Realtime."""

from __future__ import annotations

from auctionlive.config.settings import Settings
from auctionlive.ingestion.base import RawEventCallback, StatusCallback, SubscriptionHandle
from auctionlive.ingestion.supabase.realtime import RealtimeChannel, channel_topic
from auctionlive.ingestion.supabase.rest import PostgrestClient
from auctionlive.models import AuctionSnapshot, Bid


class SupabaseSource:
    def __init__(
        self,
        rest: PostgrestClient,
        realtime_url: str,
        api_key: str,
        *,
        schema: str = "public",
        heartbeat_interval_sec: float = 25.0,
    ) -> None:
        self.rest = rest
        self.realtime_url = realtime_url
        self.api_key = api_key
        self.schema = schema
        self.heartbeat_interval_sec = heartbeat_interval_sec

    @classmethod
    def from_settings(cls, settings: Settings) -> SupabaseSource:
        rest = PostgrestClient(
            settings.supabase_url,
            settings.supabase_key,
            schema=settings.supabase_schema,
            timeout=settings.request_timeout_sec,
        )
        return cls(
            rest,
            settings.realtime_url,
            settings.supabase_key,
            schema=settings.supabase_schema,
            heartbeat_interval_sec=settings.heartbeat_interval_sec,
        )

    async def fetch_auction(self, auction_id: str) -> AuctionSnapshot:
        return await self.rest.fetch_auction(auction_id)

    async def fetch_bids(self, auction_id: str) -> list[Bid]:
        return await self.rest.fetch_bids(auction_id)

    async def subscribe(
        self,
        auction_id: str,
        on_event: RawEventCallback,
        on_status_change: StatusCallback,
    ) -> SubscriptionHandle:
        channel = RealtimeChannel(
            self.realtime_url,
            self.api_key,
            auction_id,
            on_event,
            on_status_change,
            schema=self.schema,
            heartbeat_interval_sec=self.heartbeat_interval_sec,
        )
        channel.start()
        return SubscriptionHandle(auction_id=auction_id, topic=channel_topic(auction_id), extra={"channel": channel})

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        channel = handle.extra.get("channel")
        if channel is not None:
            await channel.close()

    async def aclose(self) -> None:
        await self.rest.aclose()
