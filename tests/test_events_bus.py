import asyncio

import pytest

from clients.events import InProcessEventBus


@pytest.mark.asyncio
async def test_publish_reaches_topic_and_wildcard_subscribers():
    bus = InProcessEventBus()
    auctions = bus.subscribe("auctions")
    everything = bus.subscribe()
    negotiations = bus.subscribe("negotiations")

    delivered = await bus.publish("auctions", {"entity_id": "a-1", "event_type": "BID_PLACED"})

    assert delivered == 2
    assert (await auctions.get(timeout=1)) == {"topic": "auctions", "entity_id": "a-1", "event_type": "BID_PLACED"}
    assert (await everything.get(timeout=1))["entity_id"] == "a-1"
    assert negotiations.queue.empty()


@pytest.mark.asyncio
async def test_full_subscriber_drops_without_blocking_others():
    bus = InProcessEventBus(max_queue=1)
    slow = bus.subscribe("sweeps")

    await bus.publish("sweeps", {"sweep": "auction_end"})
    fast = bus.subscribe("sweeps")
    delivered = await bus.publish("sweeps", {"sweep": "negotiation_expiry"})

    assert delivered == 1
    assert slow.dropped == 1
    assert (await slow.get(timeout=1))["sweep"] == "auction_end"
    assert (await fast.get(timeout=1))["sweep"] == "negotiation_expiry"


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery():
    bus = InProcessEventBus()
    subscription = bus.subscribe("auctions")
    assert bus.subscriber_count() == 1

    bus.unsubscribe(subscription)
    assert bus.subscriber_count("auctions") == 0
    assert await bus.publish("auctions", {"entity_id": "a-1"}) == 0

    with pytest.raises(asyncio.TimeoutError):
        await subscription.get(timeout=0.01)
