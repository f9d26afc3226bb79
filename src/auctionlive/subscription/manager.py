"""Subscription manager - one logical live subscription per auction.

States: idle -> connecting -> live -> degraded -> connecting ... ; any -> closed on stop().
Every connect (initial or after a gap) ends with a full re-fetch, because the feed
cannot replay what was missed while disconnected.
"""

from __future__ import annotations

import asyncio
import functools
import time
from typing import Any, Callable, Literal, Protocol

import structlog

from auctionlive.errors import AuctionLiveError, FetchError, TransportError, UnknownEntityError
from auctionlive.ingestion.base import ChangeEventSource, SubscriptionHandle, TransportStatus
from auctionlive.ingestion.normalize import EventNormalizer
from auctionlive.metrics.activity import ActivityFeed
from auctionlive.metrics.pressure import BiddingPressureEngine
from auctionlive.models import ActivityEvent, AuctionSnapshot, Bid, PressureMetric
from auctionlive.state.revisions import RevisionTable
from auctionlive.state.store import AuctionStateStore, StateDelta

log = structlog.get_logger(__name__)

SubscriptionState = Literal["idle", "connecting", "live", "degraded", "closed"]
ListenerKind = Literal["snapshot", "bid", "metric", "state", "error"]
LISTENER_KINDS: tuple[str, ...] = ("snapshot", "bid", "metric", "state", "error")


def backoff_delay(retry: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... capped."""
    return min(base * (2 ** retry), cap)


class ChangeRecorder(Protocol):
    """Receives everything the manager applies, in application order (see storage.event_log)."""

    def record_change(self, auction_id: str, raw: dict[str, Any], ingest_ts: int) -> None: ...

    def record_backfill(self, auction_id: str, auction: AuctionSnapshot, bids: list[Bid], ingest_ts: int) -> None: ...


class SubscriptionManager:
    """Owns the store, metrics and transport subscription for one auction."""

    def __init__(
        self,
        source: ChangeEventSource,
        *,
        reconnect_base_delay_sec: float = 1.0,
        reconnect_max_delay_sec: float = 30.0,
        reconnect_max_retries: int = 0,
        request_timeout_sec: float | None = 10.0,
        activity_limit: int = 50,
        clock: Callable[[], float] = time.time,
        recorder: ChangeRecorder | None = None,
    ) -> None:
        self.source = source
        self.reconnect_base_delay_sec = reconnect_base_delay_sec
        self.reconnect_max_delay_sec = reconnect_max_delay_sec
        self.reconnect_max_retries = reconnect_max_retries
        self.request_timeout_sec = request_timeout_sec
        self.recorder = recorder
        self._clock = clock

        self._state: SubscriptionState = "idle"
        self._state_changed = asyncio.Event()
        self._auction_id: str | None = None
        self._generation = 0
        self._attempt = 0
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._handle: SubscriptionHandle | None = None
        self._acked = asyncio.Event()
        self._connect_failure: TransportError | None = None
        self._buffer: list[tuple[dict[str, Any], int]] = []

        self._revisions = RevisionTable()
        self._store: AuctionStateStore | None = None
        self._normalizer = EventNormalizer(self._revisions)
        self._pressure = BiddingPressureEngine(clock)
        self._activity = ActivityFeed(activity_limit)
        self._listeners: dict[str, list[Callable[[Any], None]]] = {k: [] for k in LISTENER_KINDS}

        self.last_error: AuctionLiveError | None = None
        self.counters: dict[str, int] = {
            "events_received": 0,
            "events_buffered": 0,
            "events_dropped_degraded": 0,
            "backfills": 0,
            "reconnects": 0,
            "fetch_failures": 0,
            "transport_failures": 0,
            "late_results_discarded": 0,
        }

    # --- consumer interface ---

    @property
    def auction_id(self) -> str | None:
        return self._auction_id

    def subscription_state(self) -> SubscriptionState:
        return self._state

    @property
    def is_stale(self) -> bool:
        """True while a snapshot is shown but the feed is not live."""
        return self._state in ("connecting", "degraded") and self.get_snapshot() is not None

    def get_snapshot(self) -> AuctionSnapshot | None:
        return self._store.get_snapshot() if self._store is not None else None

    def get_bid_history(self, limit: int | None = None) -> list[Bid]:
        return self._store.get_bid_history(limit) if self._store is not None else []

    def current_metric(self) -> PressureMetric:
        return self._pressure.current_metric()

    def get_activity(self, limit: int | None = None) -> list[ActivityEvent]:
        return self._activity.recent(limit)

    def add_listener(self, kind: ListenerKind, callback: Callable[[Any], None]) -> Callable[[], None]:
        """Register a callback; returns a function that removes it."""
        if kind not in self._listeners:
            raise ValueError(f"unknown listener kind {kind!r}; expected one of {LISTENER_KINDS}")
        self._listeners[kind].append(callback)

        def remove() -> None:
            if callback in self._listeners[kind]:
                self._listeners[kind].remove(callback)

        return remove

    async def wait_for_state(self, state: SubscriptionState, timeout: float | None = None) -> None:
        async def _wait() -> None:
            while self._state != state:
                await self._state_changed.wait()

        await asyncio.wait_for(_wait(), timeout)

    def get_status(self) -> dict[str, Any]:
        store_counters = self._store.counters if self._store is not None else {}
        return {
            "auction_id": self._auction_id,
            "state": self._state,
            "stale": self.is_stale,
            "last_error": self.last_error.message if self.last_error else None,
            **self.counters,
            **{f"normalizer_{k}": v for k, v in self._normalizer.counters.items()},
            **{f"store_{k}": v for k, v in store_counters.items()},
        }

    # --- lifecycle ---

    async def start(self, auction_id: str) -> None:
        """idle/closed -> connecting. Returns once the connect loop is scheduled."""
        if self._state not in ("idle", "closed"):
            raise RuntimeError(f"subscription already {self._state} for auction {self._auction_id}")
        self._auction_id = auction_id
        self._generation += 1
        self._wake = asyncio.Event()
        self._revisions = RevisionTable()
        self._store = AuctionStateStore(auction_id, self._revisions)
        self._normalizer = EventNormalizer(self._revisions)
        self._pressure.reset()
        self._activity.clear()
        self.last_error = None
        log.info("subscription_start", auction_id=auction_id, generation=self._generation)
        self._set_state("connecting")
        self._task = asyncio.create_task(self._connect_loop(self._generation, self._wake))

    async def resubscribe(self) -> None:
        """Drop the current channel and go through connect + backfill again. Keeps the snapshot."""
        if self._state in ("idle", "closed"):
            raise RuntimeError("resubscribe() before start()")
        self._generation += 1
        self._wake.set()
        self._acked.set()
        self._wake = asyncio.Event()
        self.last_error = None
        await self._release_handle()
        self.counters["reconnects"] += 1
        log.info("subscription_resubscribe", auction_id=self._auction_id, generation=self._generation)
        self._task = asyncio.create_task(self._connect_loop(self._generation, self._wake))

    async def stop(self) -> None:
        """-> closed. Idempotent; in-flight fetches are left to finish and their results discarded."""
        if self._state == "closed":
            return
        self._generation += 1
        self._wake.set()
        self._acked.set()
        self._set_state("closed")
        await self._release_handle()
        if self._store is not None:
            self._store.clear()
        self._pressure.reset()
        self._activity.clear()
        self._buffer = []
        log.info("subscription_stopped", auction_id=self._auction_id)

    # --- connect / backfill ---

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self._state != "closed"

    async def _connect_loop(self, generation: int, wake: asyncio.Event) -> None:
        retries = 0
        while self._is_current(generation):
            self._set_state("connecting")
            try:
                await self._connect_once(generation)
                return
            except (TransportError, FetchError) as e:
                if not self._is_current(generation):
                    return
                await self._release_handle()
                key = "fetch_failures" if isinstance(e, FetchError) else "transport_failures"
                self.counters[key] += 1
                if self.reconnect_max_retries and retries >= self.reconnect_max_retries:
                    self.last_error = e
                    log.error("subscription_retries_exhausted", auction_id=self._auction_id, error=e.message)
                    self._set_state("degraded")
                    self._emit("error", e)
                    return
                delay = backoff_delay(retries, self.reconnect_base_delay_sec, self.reconnect_max_delay_sec)
                retries += 1
                log.warning("subscription_connect_failed", auction_id=self._auction_id, error=e.message, delay=delay)
                if await self._sleep(wake, delay):
                    return

    async def _connect_once(self, generation: int) -> None:
        self._attempt += 1
        attempt = self._attempt
        self._acked = asyncio.Event()
        self._connect_failure = None
        self._buffer = []
        on_event = functools.partial(self._on_raw_event, generation, attempt)
        on_status = functools.partial(self._on_transport_status, generation, attempt)
        try:
            handle = await self._with_timeout(self.source.subscribe(self._auction_id, on_event, on_status))
        except asyncio.TimeoutError as e:
            raise TransportError("subscribe timed out") from e
        except AuctionLiveError:
            raise
        except Exception as e:
            raise TransportError(f"subscribe failed: {e}") from e
        if not self._is_current(generation):
            self.counters["late_results_discarded"] += 1
            await self._unsubscribe(handle)
            return
        self._handle = handle

        try:
            await self._with_timeout(self._acked.wait())
        except asyncio.TimeoutError as e:
            raise TransportError("no subscription acknowledgement") from e
        if self._connect_failure is not None:
            raise self._connect_failure
        if not self._is_current(generation):
            return

        await self._backfill(generation)
        if not self._is_current(generation):
            return
        if self._connect_failure is not None:
            raise self._connect_failure

        self._set_state("live")
        buffered, self._buffer = self._buffer, []
        for raw, ingest_ts in buffered:
            self._apply_raw(raw, ingest_ts)

    async def _backfill(self, generation: int) -> None:
        auction_id = self._auction_id
        try:
            auction, bids = await self._with_timeout(
                asyncio.gather(self.source.fetch_auction(auction_id), self.source.fetch_bids(auction_id))
            )
        except asyncio.TimeoutError as e:
            raise FetchError("backfill timed out") from e
        except AuctionLiveError:
            raise
        except Exception as e:
            raise FetchError(f"backfill failed: {e}") from e
        if not self._is_current(generation):
            self.counters["late_results_discarded"] += 1
            log.info("backfill_discarded", auction_id=auction_id)
            return
        ingest_ts = int(self._clock() * 1000)
        if self.recorder is not None:
            self.recorder.record_backfill(auction_id, auction, bids, ingest_ts)
        delta = self._store.load(auction, bids)
        if not delta.applied:
            raise FetchError(f"backfill returned auction {auction.id}, expected {auction_id}")
        self.counters["backfills"] += 1
        log.info("backfill_loaded", auction_id=auction_id, bids=len(bids), price=delta.snapshot.current_price)
        self._activity.seed(delta.snapshot)
        metric = self._pressure.reset(self._store.get_bid_history())
        self._emit("snapshot", delta.snapshot)
        self._emit("metric", metric)

    async def _with_timeout(self, aw: Any) -> Any:
        if self.request_timeout_sec is None:
            return await aw
        return await asyncio.wait_for(aw, self.request_timeout_sec)

    @staticmethod
    async def _sleep(wake: asyncio.Event, delay: float) -> bool:
        """Backoff sleep; True if woken early by stop()/resubscribe()."""
        try:
            await asyncio.wait_for(wake.wait(), delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def _release_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            await self._unsubscribe(handle)

    async def _unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Unsubscribe with timeout; failures are logged, never raised."""
        try:
            await self._with_timeout(self.source.unsubscribe(handle))
        except Exception as e:
            log.warning("unsubscribe_failed", auction_id=handle.auction_id, error=str(e))

    # --- transport callbacks (run on the event loop, never concurrently) ---

    def _on_transport_status(
        self, generation: int, attempt: int, status: TransportStatus, error: Exception | None = None
    ) -> None:
        if not self._is_current(generation) or attempt != self._attempt:
            return
        log.debug("transport_status", auction_id=self._auction_id, status=status)
        if status == "SUBSCRIBED":
            self._acked.set()
            return
        failure = error if isinstance(error, TransportError) else TransportError(f"transport {status.lower()}")
        if self._state == "connecting":
            self._connect_failure = failure
            self._acked.set()
        elif self._state == "live":
            self._on_disconnect(generation, failure)

    def _on_disconnect(self, generation: int, error: TransportError) -> None:
        self.counters["transport_failures"] += 1
        log.warning("subscription_degraded", auction_id=self._auction_id, error=error.message)
        self._set_state("degraded")
        self.counters["reconnects"] += 1
        self._task = asyncio.create_task(self._reconnect(generation, self._wake))

    async def _reconnect(self, generation: int, wake: asyncio.Event) -> None:
        await self._release_handle()
        await self._connect_loop(generation, wake)

    def _on_raw_event(self, generation: int, attempt: int, raw: dict[str, Any], ingest_ts: int) -> None:
        if not self._is_current(generation) or attempt != self._attempt:
            return
        self.counters["events_received"] += 1
        if self._state == "live":
            self._apply_raw(raw, ingest_ts)
        elif self._state == "connecting":
            self.counters["events_buffered"] += 1
            self._buffer.append((raw, ingest_ts))
        else:
            self.counters["events_dropped_degraded"] += 1

    def _apply_raw(self, raw: dict[str, Any], ingest_ts: int) -> None:
        if self.recorder is not None:
            self.recorder.record_change(self._auction_id, raw, ingest_ts)
        event = self._normalizer.normalize(raw, ingest_ts)
        if event is None:
            return
        try:
            delta = self._store.apply_event(event)
        except UnknownEntityError as e:
            log.info("event_unknown_entity", entity_type=e.entity_type)
            return
        self._publish(delta)

    def _publish(self, delta: StateDelta) -> None:
        if not delta.applied or delta.snapshot is None:
            return
        self._activity.on_snapshot(delta.snapshot)
        self._emit("snapshot", delta.snapshot)
        if delta.new_bid is not None:
            self._activity.on_bid(delta.new_bid)
            self._emit("bid", delta.new_bid)
            self._emit("metric", self._pressure.on_bid_applied(delta.new_bid))

    # --- plumbing ---

    def _set_state(self, state: SubscriptionState) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        log.info("subscription_state_changed", auction_id=self._auction_id, previous=previous, state=state)
        changed, self._state_changed = self._state_changed, asyncio.Event()
        changed.set()
        self._emit("state", state)

    def _emit(self, kind: str, payload: Any) -> None:
        for callback in list(self._listeners[kind]):
            try:
                callback(payload)
            except Exception:
                log.exception("listener_failed", kind=kind, auction_id=self._auction_id)
