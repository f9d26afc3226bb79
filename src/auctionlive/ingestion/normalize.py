"""Raw change notification -> canonical ChangeEvent / AuctionSnapshot / Bid."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from pydantic import ValidationError

from auctionlive.errors import MalformedEventError, StaleEventError, UnknownEntityError
from auctionlive.models import AuctionChange, AuctionSnapshot, Bid, BidChange, ChangeEvent
from auctionlive.models._time import to_epoch_ms
from auctionlive.state.revisions import RevisionTable

log = structlog.get_logger(__name__)

_TABLES = {"auctions": "auction", "auction": "auction", "bids": "bid", "bid": "bid"}
_OPERATIONS = {"INSERT": "insert", "UPDATE": "update"}

# Columns copied into AuctionChange; None is only meaningful for the nullable ones.
_AUCTION_COLUMNS = ("status", "title", "seller_id", "starting_price", "reserve_price", "bid_increment", "winner_id", "end_time")
_NULLABLE_AUCTION_COLUMNS = frozenset({"seller_id", "reserve_price", "winner_id", "end_time"})


def _parse_ts_ms(value: Any) -> int | None:
    """ISO-8601 string, datetime or epoch number -> ms epoch."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return to_epoch_ms(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip():
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            return to_epoch_ms(datetime.fromisoformat(s))
        except ValueError:
            return None
    return None


def row_revision(row: dict[str, Any], entity_type: str, commit_timestamp: Any = None) -> int | None:
    """Explicit revision/version column, else the change commit time, else the row's own timestamps.

    Bid rows have no updated_at; a status UPDATE only gets a newer revision than its INSERT
    from the commit timestamp of the change message. Full reads carry no commit time, so
    there the creation time stands in.
    """
    for key in ("revision", "version"):
        value = row.get(key)
        if value is not None and not isinstance(value, bool):
            try:
                return int(value)
            except (TypeError, ValueError):
                return None
    committed = _parse_ts_ms(commit_timestamp)
    if committed is not None:
        return committed
    candidates = ["updated_at"]
    if entity_type == "bid":
        candidates += ["created_at", "bid_time"]
    for key in candidates:
        ts = _parse_ts_ms(row.get(key))
        if ts is not None:
            return ts
    return None


def auction_from_row(row: dict[str, Any]) -> AuctionSnapshot:
    """Convert an `auctions` row to an AuctionSnapshot. Derived fields are left for the store."""
    try:
        return AuctionSnapshot(
            id=str(row["id"]),
            status=row.get("status") or "active",
            title=row.get("title") or "",
            seller_id=row.get("seller_id"),
            starting_price=row.get("starting_price") or 0,
            current_price=row.get("current_price") or row.get("starting_price") or 0,
            reserve_price=row.get("reserve_price"),
            bid_increment=row.get("bid_increment") if row.get("bid_increment") is not None else 1.0,
            bid_count=row.get("bid_count") or 0,
            winner_id=row.get("winner_id"),
            end_time=row.get("end_time"),
            record_revision=row_revision(row, "auction") or 0,
        )
    except (KeyError, ValidationError) as e:
        raise MalformedEventError(f"invalid auction row: {e}") from e


def auction_change_from_row(row: dict[str, Any]) -> AuctionChange:
    fields = {}
    for col in _AUCTION_COLUMNS:
        if col not in row:
            continue
        if row[col] is None and col not in _NULLABLE_AUCTION_COLUMNS:
            continue
        fields[col] = row[col]
    try:
        return AuctionChange(**fields)
    except ValidationError as e:
        raise MalformedEventError(f"invalid auction change: {e}") from e


def bid_from_row(row: dict[str, Any], revision: int | None = None) -> Bid:
    """Convert a `bids` row to a Bid."""
    max_auto_bid = row.get("auto_bid_max_amount")
    if max_auto_bid is None:
        max_auto_bid = row.get("max_auto_bid")
    try:
        return Bid(
            id=str(row["id"]),
            auction_id=str(row["auction_id"]),
            bidder_id=str(row["bidder_id"]),
            amount=row["amount"],
            placed_at=row.get("bid_time") or row.get("created_at"),
            status=row.get("status") or "active",
            revision=revision if revision is not None else (row_revision(row, "bid") or 0),
            is_auto_bid=bool(row.get("is_auto_bid") or False),
            max_auto_bid=max_auto_bid,
        )
    except (KeyError, ValidationError) as e:
        raise MalformedEventError(f"invalid bid row: {e}") from e


class EventNormalizer:
    """Turns raw change notifications into ChangeEvents, dropping stale and unparseable ones."""

    def __init__(self, revisions: RevisionTable) -> None:
        self.revisions = revisions
        self.counters: dict[str, int] = {"normalized": 0, "malformed": 0, "stale": 0, "unknown_entity": 0}

    def parse(self, raw: dict[str, Any], ingest_ts: int | None = None) -> ChangeEvent:
        """Strict variant of normalize(): raises MalformedEventError, UnknownEntityError or StaleEventError."""
        if not isinstance(raw, dict):
            raise MalformedEventError(f"expected object, got {type(raw).__name__}")
        table = str(raw.get("table") or "")
        entity_type = _TABLES.get(table)
        if entity_type is None:
            raise UnknownEntityError(table)
        op_raw = str(raw.get("type") or raw.get("eventType") or "").upper()
        operation = _OPERATIONS.get(op_raw)
        if operation is None:
            raise MalformedEventError(f"unsupported operation {op_raw!r} on {table}")
        row = raw.get("record") if "record" in raw else raw.get("new")
        if not isinstance(row, dict) or row.get("id") is None:
            raise MalformedEventError(f"{table} event without record id")
        entity_id = str(row["id"])
        revision = row_revision(row, entity_type, raw.get("commit_timestamp"))
        if revision is None:
            raise MalformedEventError(f"{table} event {entity_id} has no revision or timestamp")

        self.revisions.check(entity_type, entity_id, revision)

        if entity_type == "auction":
            payload: AuctionChange | BidChange = auction_change_from_row(row)
        else:
            payload = BidChange(bid=bid_from_row(row, revision=revision))
        return ChangeEvent(
            entity_type=entity_type,
            entity_id=entity_id,
            revision=revision,
            operation=operation,
            payload=payload,
            ingest_ts=ingest_ts,
        )

    def normalize(self, raw: dict[str, Any], ingest_ts: int | None = None) -> ChangeEvent | None:
        """Return the canonical event, or None when it must not be applied."""
        try:
            event = self.parse(raw, ingest_ts)
        except StaleEventError as e:
            self.counters["stale"] += 1
            log.debug("event_stale_dropped", entity_id=e.entity_id, revision=e.revision, last_applied=e.last_applied)
            return None
        except UnknownEntityError as e:
            self.counters["unknown_entity"] += 1
            log.info("event_unknown_entity", entity_type=e.entity_type)
            return None
        except MalformedEventError as e:
            self.counters["malformed"] += 1
            log.warning("event_malformed", error=e.message)
            return None
        self.counters["normalized"] += 1
        return event
