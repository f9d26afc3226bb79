"""Supabase adapter: PostgREST reads + Realtime change feed."""

from auctionlive.ingestion.supabase.realtime import RealtimeChannel
from auctionlive.ingestion.supabase.rest import PostgrestClient
from auctionlive.ingestion.supabase.source import SupabaseSource

__all__ = ["PostgrestClient", "RealtimeChannel", "SupabaseSource"]
