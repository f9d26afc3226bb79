"""PostgREST client - full reads of an auction and its bids."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from auctionlive.errors import FetchError, MalformedEventError
from auctionlive.ingestion.normalize import auction_from_row, bid_from_row
from auctionlive.models import AuctionSnapshot, Bid

log = structlog.get_logger(__name__)


class PostgrestClient:
    """Async reads against `<url>/rest/v1`. Every failure surfaces as FetchError."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        schema: str = "public",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.schema = schema
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
            "Accept-Profile": self.schema,
        }

    async def _select(self, table: str, params: dict[str, str]) -> list[dict[str, Any]]:
        url = f"{self.base_url}/rest/v1/{table}"
        try:
            resp = await self._client.get(url, params=params, headers=self._headers())
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise FetchError(
                f"{table} read failed: HTTP {e.response.status_code}", status_code=e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            raise FetchError(f"{table} read failed: {e}") from e
        except ValueError as e:
            raise FetchError(f"{table} read returned invalid JSON") from e
        if not isinstance(data, list):
            raise FetchError(f"{table} read returned {type(data).__name__}, expected list")
        return data

    async def fetch_auction(self, auction_id: str) -> AuctionSnapshot:
        rows = await self._select("auctions", {"select": "*", "id": f"eq.{auction_id}"})
        if not rows:
            raise FetchError(f"auction {auction_id} not found", status_code=404)
        try:
            return auction_from_row(rows[0])
        except MalformedEventError as e:
            raise FetchError(e.message) from e

    async def fetch_bids(self, auction_id: str) -> list[Bid]:
        rows = await self._select(
            "bids", {"select": "*", "auction_id": f"eq.{auction_id}", "order": "bid_time.asc"}
        )
        bids = []
        for row in rows:
            try:
                bids.append(bid_from_row(row))
            except MalformedEventError as e:
                log.warning("skip_bid_row", bid_id=row.get("id"), error=e.message)
        return bids

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
