"""Error taxonomy for the live-state core.

Only FetchError and TransportError (after a configured retry limit is exhausted)
ever reach consumers. The other errors are raised at the normalization and store
boundaries, caught by their callers, logged and counted.
"""

from __future__ import annotations


class AuctionLiveError(Exception):
    """Base error for the aggregator."""

    code = "auctionlive_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(message)


class MalformedEventError(AuctionLiveError):
    """Raw change event could not be normalized."""

    code = "malformed_event"


class StaleEventError(AuctionLiveError):
    """Revision is not newer than the last applied revision for the entity."""

    code = "stale_event"

    def __init__(self, entity_id: str, revision: int, last_applied: int) -> None:
        self.entity_id = entity_id
        self.revision = revision
        self.last_applied = last_applied
        super().__init__(f"revision {revision} <= last applied {last_applied} for {entity_id}")


class UnknownEntityError(AuctionLiveError):
    """Event references an entity type the store does not model."""

    code = "unknown_entity"

    def __init__(self, entity_type: str) -> None:
        self.entity_type = entity_type
        super().__init__(f"unknown entity type: {entity_type!r}")


class TransportError(AuctionLiveError):
    """Connectivity failure on the change feed."""

    code = "transport_error"


class FetchError(AuctionLiveError):
    """Initial load or backfill fetch failed."""

    code = "fetch_error"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)
