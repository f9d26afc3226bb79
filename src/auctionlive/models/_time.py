"""Timestamp coercion shared by the models."""

from __future__ import annotations

from datetime import datetime, timezone


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC so ordering across sources never mixes naive/aware."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_epoch_ms(value: datetime) -> int:
    return int(ensure_utc(value).timestamp() * 1000)
