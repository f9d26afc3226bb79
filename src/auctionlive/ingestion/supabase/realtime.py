"""Supabase Realtime channel - Phoenix protocol over websockets: join, heartbeat, receive.

No reconnect here: a dropped socket is reported as DISCONNECTED and the
subscription manager decides when to resubscribe.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import time
from typing import Any, Callable

import structlog
import websockets

from auctionlive.errors import TransportError
from auctionlive.ingestion.base import RawEventCallback, StatusCallback, TransportStatus

log = structlog.get_logger(__name__)

PROTOCOL_VSN = "1.0.0"


def _parse_message(raw: str | bytes) -> dict[str, Any] | None:
    try:
        msg = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return msg if isinstance(msg, dict) else None


def channel_topic(auction_id: str) -> str:
    return f"realtime:auction-{auction_id}"


def socket_url(realtime_url: str, api_key: str) -> str:
    sep = "&" if "?" in realtime_url else "?"
    return f"{realtime_url}{sep}apikey={api_key}&vsn={PROTOCOL_VSN}"


def join_message(auction_id: str, api_key: str, ref: str, schema: str = "public") -> dict[str, Any]:
    """phx_join for the auction row and all of its bids."""
    return {
        "topic": channel_topic(auction_id),
        "event": "phx_join",
        "payload": {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": [
                    {"event": "*", "schema": schema, "table": "auctions", "filter": f"id=eq.{auction_id}"},
                    {"event": "*", "schema": schema, "table": "bids", "filter": f"auction_id=eq.{auction_id}"},
                ],
            },
            "access_token": api_key,
        },
        "ref": ref,
        "join_ref": ref,
    }


def heartbeat_message(ref: str) -> dict[str, Any]:
    return {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": ref}


def leave_message(auction_id: str, ref: str) -> dict[str, Any]:
    return {"topic": channel_topic(auction_id), "event": "phx_leave", "payload": {}, "ref": ref}


def unwrap_change(msg: dict[str, Any]) -> dict[str, Any] | None:
    """Return the raw row change carried by a channel message, if any."""
    event = msg.get("event")
    payload = msg.get("payload")
    if not isinstance(payload, dict):
        return None
    if event == "postgres_changes":
        data = payload.get("data")
        return data if isinstance(data, dict) else None
    # Legacy realtime format: the event name is the operation.
    if event in ("INSERT", "UPDATE", "DELETE") and "table" in payload:
        return payload
    return None


class RealtimeChannel:
    """One websocket + one channel for one auction."""

    def __init__(
        self,
        realtime_url: str,
        api_key: str,
        auction_id: str,
        on_event: RawEventCallback,
        on_status: StatusCallback,
        *,
        schema: str = "public",
        heartbeat_interval_sec: float = 25.0,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self.url = socket_url(realtime_url, api_key)
        self.api_key = api_key
        self.auction_id = auction_id
        self.topic = channel_topic(auction_id)
        self.schema = schema
        self.heartbeat_interval_sec = heartbeat_interval_sec
        self._on_event = on_event
        self._on_status = on_status
        self._connect = connect
        self._refs = itertools.count(1)
        self._join_ref: str | None = None
        self._ws: Any = None
        self._task: asyncio.Task[None] | None = None
        self._closing = False
        self._final_status_sent = False

    def _next_ref(self) -> str:
        return str(next(self._refs))

    def _notify(self, status: TransportStatus, error: Exception | None = None) -> None:
        if status != "SUBSCRIBED":
            if self._final_status_sent:
                return
            self._final_status_sent = True
        self._on_status(status, error)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def run(self) -> None:
        try:
            async with self._connect(self.url, ping_interval=None, close_timeout=5) as ws:
                self._ws = ws
                self._join_ref = self._next_ref()
                await ws.send(json.dumps(join_message(self.auction_id, self.api_key, self._join_ref, self.schema)))
                log.info("realtime_join_sent", topic=self.topic)
                heartbeat = asyncio.create_task(self._heartbeat(ws))
                try:
                    async for raw in ws:
                        msg = _parse_message(raw)
                        if msg is None:
                            continue
                        if not self._dispatch(msg):
                            break
                finally:
                    heartbeat.cancel()
                    with contextlib.suppress(asyncio.CancelledError, Exception):
                        await heartbeat
        except asyncio.CancelledError:
            self._notify("CLOSED")
            raise
        except Exception as e:
            log.warning("realtime_error", topic=self.topic, error=str(e))
            self._notify("CHANNEL_ERROR", TransportError(str(e)))
            return
        finally:
            self._ws = None
        self._notify("CLOSED" if self._closing else "DISCONNECTED")

    def _dispatch(self, msg: dict[str, Any]) -> bool:
        """Handle one message; False ends the receive loop."""
        event = msg.get("event")
        if msg.get("topic") not in (self.topic, "phoenix"):
            return True
        if event == "phx_reply":
            if msg.get("ref") != self._join_ref:
                return True
            status = (msg.get("payload") or {}).get("status")
            if status == "ok":
                log.info("realtime_subscribed", topic=self.topic)
                self._on_status("SUBSCRIBED", None)
                return True
            self._notify("CHANNEL_ERROR", TransportError(f"join rejected: {msg.get('payload')}"))
            return False
        if event == "phx_error":
            self._notify("CHANNEL_ERROR", TransportError("channel error"))
            return False
        if event == "phx_close":
            self._notify("CLOSED" if self._closing else "DISCONNECTED")
            return False
        change = unwrap_change(msg)
        if change is not None:
            self._on_event(change, int(time.time() * 1000))
        return True

    async def _heartbeat(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval_sec)
            try:
                await ws.send(json.dumps(heartbeat_message(self._next_ref())))
            except Exception as e:
                log.warning("realtime_heartbeat_failed", topic=self.topic, error=str(e))
                raise

    async def close(self) -> None:
        """Leave the channel and close the socket. Idempotent."""
        self._closing = True
        ws = self._ws
        if ws is not None:
            try:
                await ws.send(json.dumps(leave_message(self.auction_id, self._next_ref())))
                await ws.close()
            except websockets.ConnectionClosed:
                pass
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
