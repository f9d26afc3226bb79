"""Replay subcommand: rebuild an auction from the change log."""

import typer

from auctionlive.replay.engine import replay_auction, replay_to_pressure_series, replay_to_price_series
from auctionlive.storage.db import get_connection, init_schema

app = typer.Typer(help="Deterministic replay of the change log")


def _parse_ts(s: str | None) -> int | None:
    if s is None:
        return None
    try:
        return int(s)
    except ValueError:
        return None


@app.command("run")
def run_replay(
    ctx: typer.Context,
    auction: str = typer.Option(..., "--auction", "-a", help="Auction ID"),
    start: str | None = typer.Option(None, "--start", help="Start time (ms epoch)"),
    end: str | None = typer.Option(None, "--end", help="End time (ms epoch)"),
    series: str = typer.Option("price", "--series", help="Series to print: price or pressure"),
) -> None:
    """Replay an auction's recorded changes and print the resulting series and final state."""
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    start_ts = _parse_ts(start)
    end_ts = _parse_ts(end)
    try:
        if series == "pressure":
            points = replay_to_pressure_series(conn, auction, start_ts=start_ts, end_ts=end_ts)
        else:
            points = replay_to_price_series(conn, auction, start_ts=start_ts, end_ts=end_ts)
        typer.echo(f"Replayed {len(points)} rows")
        for ts, value in points[:20]:
            typer.echo(f"  {ts}  {value}")
        if len(points) > 20:
            typer.echo(f"  ... and {len(points) - 20} more")
        store = replay_auction(conn, auction, start_ts=start_ts, end_ts=end_ts)
        snap = store.get_snapshot()
        if snap is None:
            typer.echo("No snapshot in range (no backfill recorded).")
        else:
            typer.echo(
                f"Final: status={snap.status} price={snap.current_price:.2f} "
                f"bids={snap.bid_count} leader={snap.highest_bidder_id or '-'}"
            )
    finally:
        conn.close()
