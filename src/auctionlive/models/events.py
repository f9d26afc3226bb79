"""ChangeEvent - normalized change notification with a typed payload per entity."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from auctionlive.models._time import ensure_utc
from auctionlive.models.auction import AuctionStatus
from auctionlive.models.bid import Bid

EntityType = Literal["auction", "bid"]
Operation = Literal["insert", "update"]


class AuctionChange(BaseModel):
    """Changed auction columns. Only fields present in the source row are set.

    Derived columns (current_price, bid_count, highest bidder) are absent:
    the store recomputes them from its bid set.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["auction"] = "auction"
    status: AuctionStatus | None = None
    title: str | None = None
    seller_id: str | None = None
    starting_price: float | None = Field(None, ge=0)
    reserve_price: float | None = Field(None, ge=0)
    bid_increment: float | None = Field(None, ge=0)
    winner_id: str | None = None
    end_time: datetime | None = None

    @field_validator("end_time")
    @classmethod
    def end_time_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    def changes(self) -> dict[str, Any]:
        """Fields explicitly carried by the event."""
        return self.model_dump(exclude_unset=True, exclude={"kind"})


class BidChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["bid"] = "bid"
    bid: Bid


ChangePayload = Annotated[Union[AuctionChange, BidChange], Field(discriminator="kind")]


class ChangeEvent(BaseModel):
    """Canonical change event. Applied at most once per (entity_type, entity_id, revision)."""

    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    entity_id: str
    revision: int
    operation: Operation
    payload: ChangePayload
    ingest_ts: int | None = None  # ms epoch

    @model_validator(mode="after")
    def check_payload_kind(self) -> ChangeEvent:
        if self.payload.kind != self.entity_type:
            raise ValueError(f"payload kind {self.payload.kind!r} does not match entity_type {self.entity_type!r}")
        return self

    @property
    def key(self) -> tuple[str, str]:
        return (self.entity_type, self.entity_id)
