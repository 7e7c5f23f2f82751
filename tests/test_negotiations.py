import asyncio
from datetime import timedelta

import pytest

from models.entities.couchbase.negotiations import Negotiation, negotiation_key
from models.errors import InvalidState, NotFound, Unauthorized, ValidationError
from models.operations import negotiations as negotiation_ops
from models.operations.negotiations import (
    negotiation_accept,
    negotiation_cancel,
    negotiation_counter,
    negotiation_create,
    negotiation_decline,
    negotiation_expire_due,
    negotiation_get,
)


async def _countered(now, offer=100, counter=130) -> Negotiation:
    negotiation = await negotiation_create("prod-nego", "buyer-1", offer, "Would you take 100?")
    return await negotiation_counter(negotiation.id, "seller-1", counter, "130 is my best", now=now)


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_opens_pending_negotiation(negotiable_product, fakes):
    negotiation = await negotiation_create("prod-nego", "buyer-1", 90, "Hi")

    assert negotiation.id == negotiation_key("prod-nego", "buyer-1")
    assert negotiation.data.status == "PENDING"
    assert negotiation.data.seller_id == "seller-1"
    assert negotiation.data.expires_at == negotiable_product.expires_at
    assert fakes.notifications.titles_for("seller-1") == ["New Negotiation Offer"]
    assert fakes.events.types("negotiations") == ["NEGOTIATION_CREATED"]


@pytest.mark.asyncio
async def test_create_validations(negotiable_product, fakes):
    with pytest.raises(ValidationError):
        await negotiation_create("prod-nego", "buyer-1", 0)
    with pytest.raises(ValidationError):
        await negotiation_create("prod-nego", "buyer-1", 151)
    with pytest.raises(Unauthorized):
        await negotiation_create("prod-nego", "seller-1", 90)
    with pytest.raises(NotFound):
        await negotiation_create("missing", "buyer-1", 90)

    fakes.products.add("prod-fixed", "seller-1", listing_type="FIXED", base_price=100)
    with pytest.raises(ValidationError):
        await negotiation_create("prod-fixed", "buyer-1", 90)

    fakes.products.add("prod-sold", "seller-1", listing_type="NEGOTIABLE", base_price=100, status="SOLD")
    with pytest.raises(InvalidState):
        await negotiation_create("prod-sold", "buyer-1", 90)


@pytest.mark.asyncio
async def test_offer_at_price_cap_is_allowed(negotiable_product):
    negotiation = await negotiation_create("prod-nego", "buyer-1", 150)
    assert negotiation.data.buyer_offer == 150


@pytest.mark.asyncio
async def test_one_negotiation_per_product_and_buyer(negotiable_product):
    await negotiation_create("prod-nego", "buyer-1", 90)
    with pytest.raises(InvalidState):
        await negotiation_create("prod-nego", "buyer-1", 95)

    other = await negotiation_create("prod-nego", "buyer-2", 95)
    assert other.data.status == "PENDING"


@pytest.mark.asyncio
async def test_concurrent_creates_only_one_succeeds(negotiable_product):
    results = await asyncio.gather(
        negotiation_create("prod-nego", "buyer-1", 90),
        negotiation_create("prod-nego", "buyer-1", 95),
        return_exceptions=True,
    )
    assert sum(1 for r in results if isinstance(r, Negotiation)) == 1
    assert sum(1 for r in results if isinstance(r, InvalidState)) == 1


@pytest.mark.asyncio
async def test_closed_negotiation_still_blocks_new_one(negotiable_product, now):
    negotiation = await _countered(now)
    await negotiation_decline(negotiation.id, "buyer-1", now=now)

    with pytest.raises(InvalidState):
        await negotiation_create("prod-nego", "buyer-1", 90)


# ---------------------------------------------------------------------------
# Counter / accept / decline / cancel
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_counter_rules(negotiable_product, fakes, now):
    negotiation = await negotiation_create("prod-nego", "buyer-1", 100)

    with pytest.raises(Unauthorized):
        await negotiation_counter(negotiation.id, "buyer-1", 120, now=now)
    with pytest.raises(ValidationError):
        await negotiation_counter(negotiation.id, "seller-1", 100, now=now)
    with pytest.raises(ValidationError):
        await negotiation_counter(negotiation.id, "seller-1", 151, now=now)

    countered = await negotiation_counter(negotiation.id, "seller-1", 130, "Best price", now=now)
    assert countered.data.status == "COUNTERED"
    assert countered.data.seller_counter_offer == 130
    assert countered.data.seller_message == "Best price"
    assert "Counter-Offer Received" in fakes.notifications.titles_for("buyer-1")

    with pytest.raises(InvalidState):
        await negotiation_counter(negotiation.id, "seller-1", 140, now=now)


@pytest.mark.asyncio
async def test_accept_settles_counter_offer(negotiable_product, fakes, now):
    negotiation = await _countered(now)

    accepted = await negotiation_accept(negotiation.id, "buyer-1", now=now)

    assert accepted.data.status == "ACCEPTED"
    assert accepted.data.closed_by == "buyer-1"
    assert accepted.data.settlement.status == "reserved"

    reservation = fakes.carts.reservations[f"negotiation:{negotiation.id}"]
    assert reservation["user_id"] == "buyer-1"
    assert reservation["price"] == 130
    assert reservation["quantity"] == 5
    assert reservation["provenance"]["source"] == "negotiation"

    assert "Negotiation Accepted" in fakes.notifications.titles_for("seller-1")
    assert "Item Reserved In Cart" in fakes.notifications.titles_for("buyer-1")
    assert {"ACCEPTED", "SETTLED"} <= set(fakes.events.types("negotiations"))


@pytest.mark.asyncio
async def test_accept_rules(negotiable_product, fakes, now):
    negotiation = await negotiation_create("prod-nego", "buyer-1", 100)
    with pytest.raises(InvalidState):
        await negotiation_accept(negotiation.id, "buyer-1", now=now)

    await negotiation_counter(negotiation.id, "seller-1", 130, now=now)
    with pytest.raises(Unauthorized):
        await negotiation_accept(negotiation.id, "seller-1", now=now)

    fakes.products.products["prod-nego"] = negotiable_product.model_copy(update={"status": "SOLD"})
    with pytest.raises(InvalidState):
        await negotiation_accept(negotiation.id, "buyer-1", now=now)
    assert (await Negotiation.get(negotiation.id)).data.status == "COUNTERED"


@pytest.mark.asyncio
async def test_accept_survives_cart_failure(negotiable_product, fakes, now):
    negotiation = await _countered(now)
    fakes.carts.fail = True

    accepted = await negotiation_accept(negotiation.id, "buyer-1", now=now)

    assert accepted.data.status == "ACCEPTED"
    assert accepted.data.settlement.status == "failed"
    assert accepted.data.settlement.attempts == 1
    assert "cart service down" in accepted.data.settlement.last_error


@pytest.mark.asyncio
async def test_decline_closes_negotiation(negotiable_product, fakes, now):
    negotiation = await _countered(now)

    declined = await negotiation_decline(negotiation.id, "buyer-1", now=now)
    assert declined.data.status == "DECLINED"
    assert "Negotiation Declined" in fakes.notifications.titles_for("seller-1")

    with pytest.raises(InvalidState):
        await negotiation_accept(negotiation.id, "buyer-1", now=now)
    assert fakes.carts.calls == 0


@pytest.mark.asyncio
async def test_either_party_can_cancel_open_negotiation(negotiable_product, fakes, now):
    negotiation = await negotiation_create("prod-nego", "buyer-1", 100)

    with pytest.raises(Unauthorized):
        await negotiation_cancel(negotiation.id, "stranger", now=now)

    cancelled = await negotiation_cancel(negotiation.id, "seller-1", now=now)
    assert cancelled.data.status == "CANCELLED"
    assert cancelled.data.closed_by == "seller-1"
    assert "Negotiation Cancelled" in fakes.notifications.titles_for("buyer-1")

    with pytest.raises(InvalidState):
        await negotiation_cancel(negotiation.id, "buyer-1", now=now)


@pytest.mark.asyncio
async def test_get_is_limited_to_parties(negotiable_product):
    negotiation = await negotiation_create("prod-nego", "buyer-1", 100)

    assert (await negotiation_get(negotiation.id, "buyer-1")).id == negotiation.id
    assert (await negotiation_get(negotiation.id, "seller-1")).id == negotiation.id
    with pytest.raises(NotFound):
        await negotiation_get(negotiation.id, "stranger")


# ---------------------------------------------------------------------------
# Expiry sweep
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_expiry_sweep_expires_timed_out_negotiations_once(negotiable_product, fakes, now):
    pending = await negotiation_create("prod-nego", "buyer-1", 100)
    countered = await negotiation_create("prod-nego", "buyer-2", 100)
    await negotiation_counter(countered.id, "seller-1", 120, now=now)

    assert (await negotiation_expire_due(now)).processed == 0

    after_expiry = negotiable_product.expires_at + timedelta(minutes=1)
    first = await negotiation_expire_due(after_expiry)
    second = await negotiation_expire_due(after_expiry)

    assert sorted(first.entity_ids) == sorted([pending.id, countered.id])
    assert second.processed == 0
    for negotiation_id in (pending.id, countered.id):
        assert (await Negotiation.get(negotiation_id)).data.status == "EXPIRED"
    assert fakes.notifications.titles_for("buyer-1").count("Negotiation Expired") == 1
    assert fakes.notifications.titles_for("seller-1").count("Negotiation Expired") == 2
    assert "SWEEP_COMPLETED" in fakes.events.types("sweeps")


@pytest.mark.asyncio
async def test_expiry_sweep_pages_past_open_negotiations_not_due(negotiable_product, monkeypatch, now):
    monkeypatch.setattr(negotiation_ops, "DEFAULT_SWEEP_LIMIT", 2)
    negotiations = [await negotiation_create("prod-nego", f"buyer-{i}", 100) for i in range(5)]
    due = negotiations[-1]
    due.data.expires_at = now - timedelta(minutes=1)
    await Negotiation.update(due)

    result = await negotiation_expire_due(now)

    assert result.entity_ids == [due.id]
    assert (await Negotiation.get(due.id)).data.status == "EXPIRED"
    for negotiation in negotiations[:-1]:
        assert (await Negotiation.get(negotiation.id)).data.status == "PENDING"


@pytest.mark.asyncio
async def test_expiry_sweep_expires_when_product_unavailable(negotiable_product, fakes, now):
    negotiation = await negotiation_create("prod-nego", "buyer-1", 100)
    fakes.products.products["prod-nego"] = negotiable_product.model_copy(update={"status": "INACTIVE"})

    result = await negotiation_expire_due(now)

    assert result.entity_ids == [negotiation.id]
    assert (await Negotiation.get(negotiation.id)).data.status == "EXPIRED"


@pytest.mark.asyncio
async def test_expiry_sweep_leaves_terminal_negotiations(negotiable_product, now):
    negotiation = await _countered(now)
    await negotiation_accept(negotiation.id, "buyer-1", now=now)

    result = await negotiation_expire_due(negotiable_product.expires_at + timedelta(days=1))

    assert result.processed == 0
    assert (await Negotiation.get(negotiation.id)).data.status == "ACCEPTED"
