"""FastAPI consumer layer over an AuctionRegistry."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from auctionlive.api.schemas import (
    ActivityResponse,
    BidHistoryResponse,
    ErrorResponse,
    HealthResponse,
    SnapshotResponse,
    SubscriptionListResponse,
    SubscriptionStatusResponse,
    UnwatchResponse,
)
from auctionlive.config import get_settings
from auctionlive.models import PressureMetric
from auctionlive.subscription import AuctionRegistry, SubscriptionManager

_NOT_WATCHED = {404: {"model": ErrorResponse}}


def _error_json(code: str, message: str, status_code: int = 404) -> JSONResponse:
    """Return consistent error JSON: { detail, code }."""
    return JSONResponse(status_code=status_code, content={"detail": message, "code": code})


def _status(manager: SubscriptionManager) -> SubscriptionStatusResponse:
    status = manager.get_status()
    counters = {k: v for k, v in status.items() if isinstance(v, int) and not isinstance(v, bool)}
    return SubscriptionStatusResponse(
        auction_id=status["auction_id"],
        state=status["state"],
        stale=status["stale"],
        last_error=status["last_error"],
        counters=counters,
    )


def create_app(
    registry: AuctionRegistry | None = None, profile: str | None = None, config_dir: Path | None = None
) -> FastAPI:
    """Build the app. Without a registry, one is created over Supabase from config at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        source = None
        if getattr(app.state, "registry", None) is None:
            from auctionlive.ingestion.supabase import SupabaseSource

            settings = get_settings(profile, config_dir)
            source = SupabaseSource.from_settings(settings)
            app.state.registry = AuctionRegistry.from_settings(source, settings)
        yield
        await app.state.registry.close()
        if source is not None:
            await source.aclose()

    app = FastAPI(title="auctionlive API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    if registry is not None:
        app.state.registry = registry

    def _registry(request: Request) -> AuctionRegistry:
        return request.app.state.registry

    def _manager(request: Request, auction_id: str) -> SubscriptionManager | None:
        return _registry(request).get(auction_id)

    @app.get("/health", response_model=HealthResponse)
    def health(request: Request) -> HealthResponse:
        return HealthResponse(status="ok", watched=len(_registry(request)))

    @app.get("/auctions", response_model=SubscriptionListResponse)
    def list_subscriptions(request: Request) -> SubscriptionListResponse:
        items = [_status(m) for m in _registry(request)]
        return SubscriptionListResponse(subscriptions=items, total=len(items))

    @app.post("/auctions/{auction_id}/watch", response_model=SubscriptionStatusResponse, status_code=202)
    async def watch(request: Request, auction_id: str) -> SubscriptionStatusResponse:
        manager = await _registry(request).watch(auction_id)
        return _status(manager)

    @app.delete("/auctions/{auction_id}/watch", response_model=UnwatchResponse, responses=_NOT_WATCHED)
    async def unwatch(request: Request, auction_id: str) -> Any:
        if not await _registry(request).unwatch(auction_id):
            return _error_json("not_watched", f"Auction {auction_id} is not watched")
        return UnwatchResponse(auction_id=auction_id, stopped=True)

    @app.get("/auctions/{auction_id}/state", response_model=SubscriptionStatusResponse, responses=_NOT_WATCHED)
    def state(request: Request, auction_id: str) -> Any:
        manager = _manager(request, auction_id)
        if manager is None:
            return _error_json("not_watched", f"Auction {auction_id} is not watched")
        return _status(manager)

    @app.get("/auctions/{auction_id}/snapshot", response_model=SnapshotResponse, responses=_NOT_WATCHED)
    def snapshot(request: Request, auction_id: str) -> Any:
        manager = _manager(request, auction_id)
        if manager is None:
            return _error_json("not_watched", f"Auction {auction_id} is not watched")
        snap = manager.get_snapshot()
        if snap is None:
            return _error_json("no_snapshot", f"No snapshot yet for auction {auction_id} ({manager.subscription_state()})")
        return SnapshotResponse(
            snapshot=snap,
            stale=manager.is_stale,
            minimum_next_bid=snap.minimum_next_bid,
            reserve_met=snap.reserve_met,
        )

    @app.get("/auctions/{auction_id}/bids", response_model=BidHistoryResponse, responses=_NOT_WATCHED)
    def bids(request: Request, auction_id: str, limit: int = Query(50, ge=1, le=500)) -> Any:
        manager = _manager(request, auction_id)
        if manager is None:
            return _error_json("not_watched", f"Auction {auction_id} is not watched")
        history = manager.get_bid_history()
        return BidHistoryResponse(auction_id=auction_id, bids=history[:limit], total=len(history))

    @app.get("/auctions/{auction_id}/metric", response_model=PressureMetric, responses=_NOT_WATCHED)
    def metric(request: Request, auction_id: str) -> Any:
        manager = _manager(request, auction_id)
        if manager is None:
            return _error_json("not_watched", f"Auction {auction_id} is not watched")
        return manager.current_metric()

    @app.get("/auctions/{auction_id}/activity", response_model=ActivityResponse, responses=_NOT_WATCHED)
    def activity(request: Request, auction_id: str, limit: int = Query(20, ge=1, le=200)) -> Any:
        manager = _manager(request, auction_id)
        if manager is None:
            return _error_json("not_watched", f"Auction {auction_id} is not watched")
        return ActivityResponse(auction_id=auction_id, events=manager.get_activity(limit))

    return app


def run_api(
    host: str = "127.0.0.1", port: int = 8000, profile: str | None = None, config_dir: Path | None = None
) -> None:
    import uvicorn

    uvicorn.run(create_app(profile=profile, config_dir=config_dir), host=host, port=port, reload=False)
