"""Log subcommand: export, stats."""

from __future__ import annotations

import typer

from auctionlive.storage.db import get_connection, init_schema
from auctionlive.storage.event_log import log_stats
from auctionlive.storage.export import export_events_to_parquet

app = typer.Typer(help="Change log export and statistics")


@app.command("export")
def export(
    ctx: typer.Context,
    auction: str | None = typer.Option(None, "--auction", "-a", help="Filter by auction ID"),
    output: str = typer.Option("changes.parquet", "--output", "-o", help="Output path"),
) -> None:
    """Export recorded changes to Parquet."""
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        count = export_events_to_parquet(conn, output, auction_id=auction)
        typer.echo(f"Exported {count} rows to {output}")
    finally:
        conn.close()


@app.command("stats")
def stats(ctx: typer.Context) -> None:
    """Show change log statistics (counts, time range, by auction)."""
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        s = log_stats(conn)
        typer.echo(f"Total rows: {s['total_events']}")
        typer.echo(f"Min ingest_ts: {s.get('min_ingest_ts')}")
        typer.echo(f"Max ingest_ts: {s.get('max_ingest_ts')}")
        if s.get("by_auction"):
            typer.echo("By auction (top 20):")
            for row in s["by_auction"]:
                typer.echo(f"  {row['auction_id']}  {row['count']}  (backfills: {row['backfills']})")
    finally:
        conn.close()
