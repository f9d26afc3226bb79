"""Last-applied revision per (entity_type, entity_id)."""

from __future__ import annotations

from auctionlive.errors import StaleEventError


class RevisionTable:
    """Shared between the normalizer (read) and the store (write)."""

    __slots__ = ("_last",)

    def __init__(self) -> None:
        self._last: dict[tuple[str, str], int] = {}

    def last_applied(self, entity_type: str, entity_id: str) -> int | None:
        return self._last.get((entity_type, entity_id))

    def is_stale(self, entity_type: str, entity_id: str, revision: int) -> bool:
        last = self._last.get((entity_type, entity_id))
        return last is not None and revision <= last

    def check(self, entity_type: str, entity_id: str, revision: int) -> None:
        """Raise StaleEventError when revision is not newer than the last applied one."""
        last = self._last.get((entity_type, entity_id))
        if last is not None and revision <= last:
            raise StaleEventError(entity_id, revision, last)

    def record(self, entity_type: str, entity_id: str, revision: int) -> None:
        key = (entity_type, entity_id)
        if revision > self._last.get(key, revision - 1):
            self._last[key] = revision

    def reset(self, entries: dict[tuple[str, str], int] | None = None) -> None:
        self._last = dict(entries or {})

    def __len__(self) -> int:
        return len(self._last)

    def __contains__(self, key: object) -> bool:
        return key in self._last
