"""AuctionStateStore: load, ordering, idempotence, derived fields."""

from datetime import timedelta

import pytest

from auctionlive.errors import UnknownEntityError
from auctionlive.models import AuctionChange, AuctionSnapshot, Bid, BidChange, ChangeEvent
from auctionlive.state.store import AuctionStateStore

from conftest import T0


def make_auction(**kw) -> AuctionSnapshot:
    fields = {"id": "a1", "title": "Lamp", "starting_price": 100.0, "bid_increment": 5.0, "record_revision": 1}
    fields.update(kw)
    return AuctionSnapshot(**fields)


def make_bid(bid_id: str, amount: float, at: float, bidder: str = "u1", revision: int = 1, **kw) -> Bid:
    return Bid(
        id=bid_id,
        auction_id=kw.pop("auction_id", "a1"),
        bidder_id=bidder,
        amount=amount,
        placed_at=T0 + timedelta(seconds=at),
        revision=revision,
        **kw,
    )


def bid_event(bid: Bid) -> ChangeEvent:
    return ChangeEvent(entity_type="bid", entity_id=bid.id, revision=bid.revision, operation="insert", payload=BidChange(bid=bid))


def auction_event(revision: int, **changes) -> ChangeEvent:
    return ChangeEvent(
        entity_type="auction", entity_id="a1", revision=revision, operation="update", payload=AuctionChange(**changes)
    )


@pytest.fixture
def store() -> AuctionStateStore:
    s = AuctionStateStore("a1")
    s.load(make_auction(), [])
    return s


def test_load_recomputes_derived_fields():
    s = AuctionStateStore("a1")
    auction = make_auction(current_price=999.0, bid_count=42, highest_bidder_id="ghost")
    delta = s.load(auction, [make_bid("b1", 110, 1, "u1"), make_bid("b2", 120, 2, "u2")])
    snap = delta.snapshot
    assert snap.current_price == 120
    assert snap.bid_count == 2
    assert snap.highest_bidder_id == "u2"
    assert s.get_bid("b2").status == "active"
    assert s.get_bid("b1").status == "outbid"
    assert snap.minimum_next_bid == 125


def test_empty_auction_uses_starting_price(store):
    snap = store.get_snapshot()
    assert snap.current_price == 100.0
    assert snap.bid_count == 0
    assert snap.highest_bidder_id is None
    assert snap.minimum_next_bid == 100.0


def test_duplicate_event_applied_once(store):
    event = bid_event(make_bid("b1", 110, 1))
    first = store.apply_event(event)
    second = store.apply_event(event)
    assert first.applied
    assert not second.applied and second.reason == "stale"
    assert store.get_snapshot().bid_count == 1
    assert store.get_snapshot().revision == first.snapshot.revision
    assert store.counters["stale"] == 1


def test_out_of_order_auction_revisions(store):
    applied = [store.apply_event(auction_event(r, title=f"rev {r}")).applied for r in (3, 1, 2)]
    assert applied == [True, False, False]
    assert store.get_snapshot().title == "rev 3"
    assert store.get_snapshot().record_revision == 3


def test_lower_bid_never_lowers_price(store):
    store.apply_event(bid_event(make_bid("b1", 120, 1, "u1")))
    delta = store.apply_event(bid_event(make_bid("b2", 110, 2, "u2")))
    assert delta.applied
    assert delta.new_bid.status == "outbid"
    assert not delta.price_changed
    snap = store.get_snapshot()
    assert snap.current_price == 120
    assert snap.highest_bidder_id == "u1"
    assert snap.bid_count == 2


def test_new_high_bid_demotes_previous_leader(store):
    store.apply_event(bid_event(make_bid("b1", 110, 1, "u1")))
    delta = store.apply_event(bid_event(make_bid("b2", 130, 2, "u2")))
    assert [b.id for b in delta.status_changes] == ["b1"]
    assert store.get_bid("b1").status == "outbid"
    assert store.get_bid("b2").status == "active"
    assert delta.price_changed


@pytest.mark.parametrize("order", [("early", "late"), ("late", "early")])
def test_equal_amounts_later_bid_wins(store, order):
    bids = {"early": make_bid("b-early", 150, 10, "u1"), "late": make_bid("b-late", 150, 20, "u2")}
    for name in order:
        store.apply_event(bid_event(bids[name]))
    assert store.highest_bid.id == "b-late"
    assert store.get_snapshot().highest_bidder_id == "u2"


def test_bid_history_ranked_highest_first(store):
    for i, amount in enumerate([110, 140, 120]):
        store.apply_event(bid_event(make_bid(f"b{i}", amount, i)))
    assert [b.amount for b in store.get_bid_history()] == [140, 120, 110]
    assert len(store.get_bid_history(limit=2)) == 2


def test_status_update_keeps_amount(store):
    store.apply_event(bid_event(make_bid("b1", 110, 1)))
    winning = make_bid("b1", 999, 1, revision=2, status="winning")
    delta = store.apply_event(
        ChangeEvent(entity_type="bid", entity_id="b1", revision=2, operation="update", payload=BidChange(bid=winning))
    )
    assert delta.applied
    assert store.get_bid("b1").status == "winning"
    assert store.get_bid("b1").amount == 110
    assert store.get_snapshot().current_price == 110


def test_auction_update_does_not_touch_derived_fields(store):
    store.apply_event(bid_event(make_bid("b1", 110, 1)))
    store.apply_event(auction_event(5, status="ended", winner_id="u1"))
    snap = store.get_snapshot()
    assert snap.status == "ended"
    assert snap.winner_id == "u1"
    assert snap.current_price == 110
    assert snap.bid_count == 1


def test_foreign_bid_skipped(store):
    delta = store.apply_event(bid_event(make_bid("x1", 500, 1, auction_id="other")))
    assert not delta.applied and delta.reason == "foreign"
    assert store.get_snapshot().bid_count == 0


def test_event_before_load_not_applied():
    s = AuctionStateStore("a1")
    delta = s.apply_event(bid_event(make_bid("b1", 110, 1)))
    assert not delta.applied and delta.reason == "before_snapshot"
    assert s.get_snapshot() is None
    assert s.counters["before_snapshot"] == 1


def test_unknown_entity_type_raises(store):
    event = ChangeEvent.model_construct(entity_type="lot", entity_id="l1", revision=1, operation="insert", payload=None)
    with pytest.raises(UnknownEntityError):
        store.apply_event(event)


def test_reload_resets_revisions(store):
    store.apply_event(bid_event(make_bid("b1", 110, 1, revision=10)))
    store.load(make_auction(), [make_bid("b1", 110, 1, revision=3)])
    assert store.revisions.last_applied("bid", "b1") == 3


def test_clear(store):
    store.clear()
    assert store.get_snapshot() is None
    assert store.get_bid_history() == []
    assert len(store.revisions) == 0


def test_source_active_status_does_not_revive_outbid_bid():
    s = AuctionStateStore("a1")
    s.load(make_auction(), [make_bid("b1", 110, 1, "u1"), make_bid("b2", 130, 2, "u2")])
    stale_row = make_bid("b1", 110, 1, "u1", revision=5, status="active")
    delta = s.apply_event(
        ChangeEvent(entity_type="bid", entity_id="b1", revision=5, operation="update", payload=BidChange(bid=stale_row))
    )
    assert delta.applied
    assert delta.status_changes == []
    assert [b.id for b in s.get_bid_history() if b.status == "active"] == ["b2"]
    assert s.get_bid("b1").status == "outbid"


def test_source_outbid_status_does_not_demote_leader(store):
    store.apply_event(bid_event(make_bid("b1", 110, 1)))
    demoted = make_bid("b1", 110, 1, revision=2, status="outbid")
    store.apply_event(
        ChangeEvent(entity_type="bid", entity_id="b1", revision=2, operation="update", payload=BidChange(bid=demoted))
    )
    assert store.get_bid("b1").status == "active"
    assert store.highest_bid.status == "active"
