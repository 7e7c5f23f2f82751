from datetime import datetime, timedelta, timezone

import pytest

from models.entities.couchbase.auctions import Auction
from models.entities.couchbase.negotiations import Negotiation
from models.operations.auctions import auction_create, auction_end_due, auction_place_bid
from models.operations.negotiations import (
    negotiation_accept,
    negotiation_counter,
    negotiation_create,
)
from models.operations.settlements import settlement_new, settlement_reconcile, settlement_run


async def _ended_auction(now) -> Auction:
    auction = await auction_create(
        product_id="prod-auction",
        seller_id="seller-1",
        starting_price=100,
        bid_increment=10,
        start_time=now - timedelta(minutes=5),
        end_time=now + timedelta(hours=1),
        now=now,
    )
    await auction_place_bid(auction.id, "buyer-a", 110, now=now)
    await auction_end_due(auction.data.end_time)
    return await Auction.get(auction.id)


async def _accepted_negotiation(now) -> Negotiation:
    negotiation = await negotiation_create("prod-nego", "buyer-1", 100)
    await negotiation_counter(negotiation.id, "seller-1", 130, now=now)
    return await negotiation_accept(negotiation.id, "buyer-1", now=now)


def test_settlement_new_builds_idempotency_key():
    s = settlement_new("auction", "auction::p1", "buyer-a", "p1", 110, 1, restart_round=0)
    assert s.status == "pending"
    assert s.idempotency_key == "auction:auction::p1:0"
    assert s.attempts == 0

    assert settlement_new("negotiation", "n-1", "buyer-a", "p1", 90, 5).idempotency_key == "negotiation:n-1"
    assert settlement_new("auction", "auction::p1", "buyer-b", "p1", 200, 1, restart_round=1).idempotency_key == "auction:auction::p1:1"


@pytest.mark.asyncio
async def test_settlement_run_is_idempotent(auction_product, fakes, now):
    auction = await _ended_auction(now)
    assert auction.data.settlement.status == "reserved"

    assert await settlement_run("auction", auction.id) is None
    assert await settlement_run("auction", auction.id) is None

    assert fakes.carts.calls == 1
    assert len(fakes.carts.reservations) == 1
    assert fakes.notifications.titles_for("buyer-a").count("Item Reserved In Cart") == 1


@pytest.mark.asyncio
async def test_failed_settlement_is_reconciled(negotiable_product, fakes, now):
    fakes.carts.fail = True
    negotiation = await _accepted_negotiation(now)
    assert negotiation.data.settlement.status == "failed"

    still_failing = await settlement_reconcile(now)
    assert still_failing.processed == 0
    assert [e.entity_id for e in still_failing.errors] == [negotiation.id]
    assert (await Negotiation.get(negotiation.id)).data.settlement.attempts == 2

    fakes.carts.fail = False
    result = await settlement_reconcile(now)

    assert result.entity_ids == [negotiation.id]
    settled = (await Negotiation.get(negotiation.id)).data.settlement
    assert settled.status == "reserved"
    assert settled.attempts == 3
    assert settled.last_error is None
    assert fakes.carts.reservations[f"negotiation:{negotiation.id}"]["price"] == 130

    assert (await settlement_reconcile(now)).processed == 0
    assert len(fakes.carts.reservations) == 1


@pytest.mark.asyncio
async def test_reconcile_gives_up_after_max_attempts(auction_product, fakes, now):
    fakes.carts.fail = True
    auction = await _ended_auction(now)

    await settlement_reconcile(now, max_attempts=2)
    assert (await Auction.get(auction.id)).data.settlement.attempts == 2

    result = await settlement_reconcile(now, max_attempts=2)
    assert result.processed == 0
    assert result.errors == []
    assert (await Auction.get(auction.id)).data.settlement.attempts == 2


@pytest.mark.asyncio
async def test_reconcile_picks_up_stale_pending_settlement(auction_product, bucket, fakes, now):
    fakes.carts.fail = True
    auction = await _ended_auction(now)
    fakes.carts.fail = False

    # Simulate a crash between the winning write and the first reservation attempt.
    doc = bucket.collection("auctions").docs[auction.id]
    doc["settlement"].update(status="pending", attempts=0, last_attempt_at=None, last_error=None)

    fresh = datetime.now(timezone.utc)
    assert (await settlement_reconcile(fresh, grace_seconds=3600)).processed == 0

    result = await settlement_reconcile(fresh + timedelta(minutes=5), grace_seconds=60)
    assert result.entity_ids == [auction.id]
    assert (await Auction.get(auction.id)).data.settlement.status == "reserved"
