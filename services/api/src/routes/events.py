"""
Server-Sent Events stream of engine state changes.

GET /events/stream?topic=auctions|negotiations|sweeps

Each message is sent as ``event: <event_type>`` with the JSON event as
data. A comment line is sent every ``KEEPALIVE_SECONDS`` so proxies keep
the connection open.
"""

import asyncio
import json
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from clients.events import WILDCARD, InProcessEventBus
from models.operations.events import TOPIC_AUCTIONS, TOPIC_NEGOTIATIONS, TOPIC_SWEEPS
from utils import log

logger = log.get_logger(__name__)

router = APIRouter(prefix="/events", tags=["events"])

KEEPALIVE_SECONDS = 15.0

TOPICS = (TOPIC_AUCTIONS, TOPIC_NEGOTIATIONS, TOPIC_SWEEPS)


def format_sse(message: dict) -> str:
    event_type = message.get("event_type", "message")
    return f"event: {event_type}\ndata: {json.dumps(message, default=str)}\n\n"


@router.get("/stream")
async def route_events_stream(request: Request, topic: Optional[str] = None):
    """Live stream of auction, negotiation and sweep events."""
    if topic is not None and topic not in TOPICS:
        raise HTTPException(status_code=400, detail=f"Unknown topic: {topic}")

    bus: Optional[InProcessEventBus] = getattr(request.app.state, "event_bus", None)
    if bus is None:
        raise HTTPException(status_code=503, detail="Event stream is not available")

    subscription = bus.subscribe(topic or WILDCARD)
    logger.info(f"SSE subscriber connected (topic: {subscription.topic})")

    async def event_generator():
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    message = await subscription.get(timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield format_sse(message)
        finally:
            bus.unsubscribe(subscription)
            logger.info(f"SSE subscriber disconnected (topic: {subscription.topic})")

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
