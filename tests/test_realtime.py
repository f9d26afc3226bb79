"""Realtime channel: Phoenix messages and dispatch."""

import asyncio
import gc
import json

from auctionlive.ingestion.supabase.realtime import (
    RealtimeChannel,
    channel_topic,
    join_message,
    socket_url,
    unwrap_change,
)

from conftest import bid_row


class FakeSocket:
    def __init__(self, messages):
        self.messages = [json.dumps(m) for m in messages]
        self.sent = []

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        pass

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for m in self.messages:
            yield m

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


def make_channel(connect=None, heartbeat_interval_sec=60):
    events, statuses = [], []
    channel = RealtimeChannel(
        "wss://proj.supabase.co/realtime/v1/websocket",
        "anon",
        "a1",
        lambda raw, ts: events.append(raw),
        lambda status, err: statuses.append(status),
        heartbeat_interval_sec=heartbeat_interval_sec,
        **({"connect": connect} if connect else {}),
    )
    return channel, events, statuses


def postgres_change(row):
    return {
        "topic": channel_topic("a1"),
        "event": "postgres_changes",
        "payload": {"data": {"table": "bids", "type": "INSERT", "record": row}},
    }


def test_join_message_filters_by_auction():
    msg = join_message("a1", "anon", "1")
    changes = msg["payload"]["config"]["postgres_changes"]
    assert msg["topic"] == "realtime:auction-a1"
    assert {c["table"]: c["filter"] for c in changes} == {"auctions": "id=eq.a1", "bids": "auction_id=eq.a1"}


def test_socket_url():
    assert socket_url("wss://x/realtime/v1/websocket", "k") == "wss://x/realtime/v1/websocket?apikey=k&vsn=1.0.0"


def test_unwrap_change_formats():
    row = bid_row("b1", 110.0, 1)
    assert unwrap_change(postgres_change(row))["record"] == row
    legacy = {"event": "INSERT", "payload": {"table": "bids", "type": "INSERT", "record": row}}
    assert unwrap_change(legacy)["table"] == "bids"
    assert unwrap_change({"event": "presence_state", "payload": {}}) is None


def test_dispatch_reply_change_and_error():
    channel, events, statuses = make_channel()
    channel._join_ref = "1"
    assert channel._dispatch({"topic": channel.topic, "event": "phx_reply", "ref": "2", "payload": {"status": "ok"}})
    assert statuses == []
    assert channel._dispatch({"topic": channel.topic, "event": "phx_reply", "ref": "1", "payload": {"status": "ok"}})
    assert statuses == ["SUBSCRIBED"]
    assert channel._dispatch(postgres_change(bid_row("b1", 110.0, 1)))
    assert len(events) == 1
    assert channel._dispatch({"topic": "realtime:auction-other", "event": "postgres_changes", "payload": {}})
    assert not channel._dispatch({"topic": channel.topic, "event": "phx_error", "payload": {}})
    assert not channel._dispatch({"topic": channel.topic, "event": "phx_close", "payload": {}})
    assert statuses == ["SUBSCRIBED", "CHANNEL_ERROR"]


def test_rejected_join():
    channel, _, statuses = make_channel()
    channel._join_ref = "1"
    assert not channel._dispatch(
        {"topic": channel.topic, "event": "phx_reply", "ref": "1", "payload": {"status": "error"}}
    )
    assert statuses == ["CHANNEL_ERROR"]


async def test_run_joins_and_reports_disconnect():
    topic = channel_topic("a1")
    sock = FakeSocket(
        [
            {"topic": topic, "event": "phx_reply", "ref": "1", "payload": {"status": "ok"}},
            postgres_change(bid_row("b1", 110.0, 1)),
            "not json",
        ]
    )
    channel, events, statuses = make_channel(connect=lambda url, **kw: sock)
    await channel.run()
    assert sock.sent[0]["event"] == "phx_join"
    assert sock.sent[0]["ref"] == "1"
    assert [e["record"]["id"] for e in events] == ["b1"]
    assert statuses == ["SUBSCRIBED", "DISCONNECTED"]


async def test_connect_failure_reports_channel_error():
    def refuse(url, **kw):
        raise OSError("refused")

    channel, _, statuses = make_channel(connect=refuse)
    await channel.run()
    assert statuses == ["CHANNEL_ERROR"]


class DeadHeartbeatSocket(FakeSocket):
    """Accepts the join, fails every heartbeat, then ends the stream."""

    async def send(self, data):
        if json.loads(data)["event"] == "heartbeat":
            raise ConnectionError("socket closed")
        await super().send(data)

    async def _iter(self):
        for m in self.messages:
            yield m
        await asyncio.sleep(0.05)


async def test_failed_heartbeat_is_collected_on_exit():
    loop = asyncio.get_running_loop()
    errors = []
    previous = loop.get_exception_handler()
    loop.set_exception_handler(lambda _loop, context: errors.append(context))
    try:
        topic = channel_topic("a1")
        sock = DeadHeartbeatSocket([{"topic": topic, "event": "phx_reply", "ref": "1", "payload": {"status": "ok"}}])
        channel, _, statuses = make_channel(connect=lambda url, **kw: sock, heartbeat_interval_sec=0.01)
        await channel.run()
        gc.collect()
        await asyncio.sleep(0)
    finally:
        loop.set_exception_handler(previous)
    assert statuses == ["SUBSCRIBED", "DISCONNECTED"]
    assert errors == []
