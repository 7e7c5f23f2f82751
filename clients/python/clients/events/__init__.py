"""In-process publish/subscribe bus for state-change events.

Publishing never blocks: every subscriber owns a bounded ``asyncio.Queue``
and an event that does not fit is dropped for that subscriber only.

Usage::

    bus = InProcessEventBus()
    subscription = bus.subscribe("auctions")
    await bus.publish("auctions", {"entity_id": "a-1"})
    payload = await subscription.get()
    bus.unsubscribe(subscription)
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Optional, Set

logger = logging.getLogger(__name__)

WILDCARD = "*"


class Subscription:
    def __init__(self, topic: str, max_queue: int) -> None:
        self.topic = topic
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self.dropped = 0

    async def get(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)


class InProcessEventBus:
    def __init__(self, max_queue: int = 1000) -> None:
        self.max_queue = max_queue
        self._subscribers: Dict[str, Set[Subscription]] = defaultdict(set)

    def subscribe(self, topic: str = WILDCARD) -> Subscription:
        """Subscribe to one topic, or to every topic with ``"*"``."""
        subscription = Subscription(topic, self.max_queue)
        self._subscribers[topic].add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers[subscription.topic].discard(subscription)

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        if topic is None:
            return sum(len(subs) for subs in self._subscribers.values())
        return len(self._subscribers.get(topic, ()))

    async def publish(self, topic: str, payload: Dict[str, Any]) -> int:
        """Deliver *payload* to the topic's subscribers; returns how many got it."""
        message = {"topic": topic, **payload}
        delivered = 0
        targets = list(self._subscribers.get(topic, ())) + list(self._subscribers.get(WILDCARD, ()))
        for subscription in targets:
            try:
                subscription.queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                subscription.dropped += 1
                logger.warning(
                    f"Event dropped for slow subscriber on '{subscription.topic}' "
                    f"(dropped so far: {subscription.dropped})"
                )
        return delivered
