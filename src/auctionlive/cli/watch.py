"""Watch subcommand: follow one auction live until Ctrl+C."""

from __future__ import annotations

import asyncio
import signal
import sys

import typer

from auctionlive.config import Settings
from auctionlive.ingestion.supabase import SupabaseSource
from auctionlive.models import AuctionSnapshot, Bid, PressureMetric
from auctionlive.storage.db import get_connection, init_schema
from auctionlive.storage.event_log import ChangeLogRecorder
from auctionlive.subscription import SubscriptionManager


def _print_snapshot(snap: AuctionSnapshot) -> None:
    typer.echo(
        f"[{snap.status}] price={snap.current_price:.2f} bids={snap.bid_count} "
        f"leader={snap.highest_bidder_id or '-'} next>={snap.minimum_next_bid:.2f}"
    )


def _print_bid(bid: Bid) -> None:
    typer.echo(f"  bid {bid.amount:.2f} by {bid.bidder_id} ({bid.status})")


def _print_metric(metric: PressureMetric) -> None:
    typer.echo(f"  pressure={metric.level} 1m={metric.bids_last_minute} 5m={metric.bids_last_5_minutes} trend={metric.trend}")


async def _watch(settings: Settings, auction_id: str, recorder: ChangeLogRecorder | None, stop_event: asyncio.Event) -> None:
    source = SupabaseSource.from_settings(settings)
    manager = SubscriptionManager(
        source,
        reconnect_base_delay_sec=settings.reconnect_base_delay_sec,
        reconnect_max_delay_sec=settings.reconnect_max_delay_sec,
        reconnect_max_retries=settings.reconnect_max_retries,
        request_timeout_sec=settings.request_timeout_sec,
        activity_limit=settings.activity_limit,
        recorder=recorder,
    )
    manager.add_listener("state", lambda state: typer.echo(f"state: {state}"))
    manager.add_listener("snapshot", _print_snapshot)
    manager.add_listener("bid", _print_bid)
    manager.add_listener("metric", _print_metric)
    manager.add_listener("error", lambda err: typer.echo(f"error: {err}", err=True))
    try:
        await manager.start(auction_id)
        await stop_event.wait()
    finally:
        await manager.stop()
        await source.aclose()


def watch(
    ctx: typer.Context,
    auction_id: str = typer.Argument(..., help="Auction ID"),
    record: bool = typer.Option(False, "--record", help="Append applied changes to the DuckDB change log"),
) -> None:
    """Subscribe to one auction and print snapshot, bid and pressure updates (Ctrl+C to stop)."""
    settings = ctx.obj["settings"]
    if not settings.supabase_url or not settings.supabase_key:
        typer.echo("Supabase URL/key not configured. Set AUCTIONLIVE_SUPABASE_URL and AUCTIONLIVE_SUPABASE_KEY.")
        raise typer.Exit(1)
    conn = None
    recorder = None
    if record:
        conn = get_connection(settings.db_path)
        init_schema(conn)
        recorder = ChangeLogRecorder(conn, batch_size=settings.event_batch_size)
    stop_event = asyncio.Event()

    def shutdown() -> None:
        stop_event.set()

    loop = asyncio.new_event_loop()
    if sys.platform != "win32":
        loop.add_signal_handler(signal.SIGINT, shutdown)
        loop.add_signal_handler(signal.SIGTERM, shutdown)
    try:
        typer.echo(f"Watching auction {auction_id} (Ctrl+C to stop)...")
        loop.run_until_complete(_watch(settings, auction_id, recorder, stop_event))
    except KeyboardInterrupt:
        pass
    finally:
        if recorder is not None:
            recorder.flush()
            typer.echo(f"Recorded {recorder.recorded} change log rows.")
        if conn is not None:
            conn.close()
        loop.close()
    typer.echo("Stopped.")
