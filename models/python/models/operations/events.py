"""
State-change event contract and fan-out.

Each transition publishes one ``EntityEvent``; each sweep additionally
publishes one ``SweepEvent`` so subscribers that refresh everything can react
once per cycle rather than once per entity. Publishing and notifying are
best effort: failures are logged and never reach the caller, because the
transition they describe is already committed.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel

from models.collaborators import collaborators_get
from models.entities.couchbase.auctions import Auction
from models.entities.couchbase.negotiations import Negotiation
from models.operations.sweeps import SweepResult

logger = logging.getLogger(__name__)

TOPIC_AUCTIONS = "auctions"
TOPIC_NEGOTIATIONS = "negotiations"
TOPIC_SWEEPS = "sweeps"

EventType = Literal[
    "CREATED",
    "STARTED",
    "BID_PLACED",
    "ENDED",
    "RESTARTED",
    "CANCELLED",
    "ENDING_SOON",
    "NEGOTIATION_CREATED",
    "COUNTERED",
    "ACCEPTED",
    "DECLINED",
    "NEGOTIATION_CANCELLED",
    "EXPIRED",
    "SETTLED",
]


class EntityEvent(BaseModel):
    entity_type: Literal["auction", "negotiation"]
    entity_id: str
    event_type: EventType
    status: str
    timestamp: datetime
    amounts: Dict[str, Optional[float]] = {}
    related_product_id: Optional[str] = None
    actor_id: Optional[str] = None


class SweepEvent(BaseModel):
    sweep: str
    event_type: Literal["SWEEP_COMPLETED"] = "SWEEP_COMPLETED"
    processed: int
    entity_ids: List[str] = []
    error_count: int = 0
    timestamp: datetime


def auction_event(
    auction: Auction,
    event_type: EventType,
    actor_id: Optional[str] = None,
    **amounts: Optional[float],
) -> EntityEvent:
    d = auction.data
    return EntityEvent(
        entity_type="auction",
        entity_id=auction.id,
        event_type=event_type,
        status=d.status,
        timestamp=datetime.now(timezone.utc),
        amounts={"current_bid": d.current_bid, "bid_count": float(d.bid_count), **amounts},
        related_product_id=d.product_id,
        actor_id=actor_id,
    )


def negotiation_event(
    negotiation: Negotiation,
    event_type: EventType,
    actor_id: Optional[str] = None,
) -> EntityEvent:
    d = negotiation.data
    return EntityEvent(
        entity_type="negotiation",
        entity_id=negotiation.id,
        event_type=event_type,
        status=d.status,
        timestamp=datetime.now(timezone.utc),
        amounts={"buyer_offer": d.buyer_offer, "seller_counter_offer": d.seller_counter_offer},
        related_product_id=d.product_id,
        actor_id=actor_id,
    )


async def event_publish(event: EntityEvent) -> None:
    topic = TOPIC_AUCTIONS if event.entity_type == "auction" else TOPIC_NEGOTIATIONS
    try:
        await collaborators_get().events.publish(topic, event.model_dump(mode="json"))
    except Exception as e:
        logger.warning(f"Failed to publish {event.event_type} for {event.entity_type} {event.entity_id}: {e}")


async def event_publish_sweep(sweep: str, result: SweepResult, now: Optional[datetime] = None) -> None:
    """Publish the aggregate event for one sweep cycle."""
    event = SweepEvent(
        sweep=sweep,
        processed=result.processed,
        entity_ids=result.entity_ids,
        error_count=len(result.errors),
        timestamp=now or datetime.now(timezone.utc),
    )
    try:
        await collaborators_get().events.publish(TOPIC_SWEEPS, event.model_dump(mode="json"))
    except Exception as e:
        logger.warning(f"Failed to publish sweep event for {sweep}: {e}")


async def notification_send(user_id: str, title: str, message: str, data: Dict[str, Any]) -> bool:
    """Notify a user; returns False (and logs) when the notification centre fails."""
    try:
        await collaborators_get().notifications.notify(user_id, title, message, data)
        return True
    except Exception as e:
        logger.error(f"Failed to notify user {user_id} ({title}): {e}")
        return False
