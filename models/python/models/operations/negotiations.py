"""
Negotiation business logic: buyer offer, seller counter-offer, buyer answer.

States: PENDING → COUNTERED → ACCEPTED | DECLINED, and PENDING/COUNTERED →
CANCELLED | EXPIRED. Terminal states are never mutated again.

A buyer holds at most one negotiation per product: the document key is
derived from (product, buyer) and created with insert, so two concurrent
creates cannot both succeed. Transitions go through the CAS helper and
re-validate status and caller against the fresh read.
"""

import logging
from datetime import datetime
from typing import AsyncIterator, Dict, List, Literal, Optional

from couchbase.exceptions import DocumentExistsException

from models.clock import as_utc, utc_now
from models.collaborators import ProductSnapshot, product_get
from models.entities.couchbase.negotiations import (
    OPEN_STATUSES,
    Negotiation,
    NegotiationData,
    negotiation_key,
)
from models.errors import InvalidState, NotFound, Unauthorized, ValidationError
from models.operations.cas import NoChange, cas_retry
from models.operations.events import (
    event_publish,
    event_publish_sweep,
    negotiation_event,
    notification_send,
)
from models.operations.settlements import settlement_new, settlement_run
from models.operations.sweeps import SweepResult

logger = logging.getLogger(__name__)

# Offers and counter-offers above this multiple of the base price are rejected.
MAX_PRICE_FACTOR = 1.5

DEFAULT_SWEEP_LIMIT = 1000


async def _negotiation_cas_retry(negotiation_id: str, mutator) -> Optional[Negotiation]:
    return await cas_retry(Negotiation, negotiation_id, mutator)


async def _negotiation_require(negotiation_id: str) -> Negotiation:
    negotiation = await Negotiation.get(negotiation_id)
    if not negotiation:
        raise NotFound(f"Negotiation {negotiation_id} not found")
    return negotiation


def _notification_data(negotiation: Negotiation, **extra) -> Dict:
    return {
        "negotiationId": negotiation.id,
        "productId": negotiation.data.product_id,
        **extra,
    }


async def negotiation_create(
    product_id: str,
    buyer_id: str,
    offer: float,
    message: Optional[str] = None,
) -> Negotiation:
    """Open a negotiation with an initial buyer offer."""
    product = await product_get(product_id)
    if not product:
        raise NotFound(f"Product {product_id} not found")
    if product.status != "ACTIVE":
        raise InvalidState("Product is not available for negotiation")
    if product.listing_type != "NEGOTIABLE":
        raise ValidationError("Product is not negotiable")
    if product.seller_id == buyer_id:
        raise Unauthorized("Cannot negotiate on your own product")

    key = negotiation_key(product_id, buyer_id)
    if await Negotiation.get(key):
        raise InvalidState("Negotiation already exists for this product")

    if offer <= 0:
        raise ValidationError("Offer amount must be greater than 0")
    if offer > product.base_price * MAX_PRICE_FACTOR:
        raise ValidationError("Offer amount cannot exceed 150% of base price")

    data = NegotiationData(
        product_id=product_id,
        buyer_id=buyer_id,
        seller_id=product.seller_id,
        buyer_offer=offer,
        buyer_message=message,
        status="PENDING",
        expires_at=product.expires_at,
    )
    try:
        negotiation = await Negotiation.create(data, key=key, user_id=buyer_id)
    except DocumentExistsException:
        raise InvalidState("Negotiation already exists for this product")

    logger.info(f"Negotiation created: {negotiation.id} for product: {product_id}")

    await notification_send(
        product.seller_id,
        "New Negotiation Offer",
        f"A buyer has made an offer of {offer} {product.currency} for {product.title}",
        _notification_data(negotiation, buyerId=buyer_id, offer=offer),
    )
    await event_publish(negotiation_event(negotiation, "NEGOTIATION_CREATED", actor_id=buyer_id))
    return negotiation


async def negotiation_counter(
    negotiation_id: str,
    seller_id: str,
    counter: float,
    message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Negotiation:
    """Seller answers a PENDING offer with a higher counter-offer."""
    now = as_utc(now) or utc_now()
    existing = await _negotiation_require(negotiation_id)
    if existing.data.seller_id != seller_id:
        raise Unauthorized("Unauthorized to send counter-offer")

    product = await product_get(existing.data.product_id)
    if not product:
        raise NotFound(f"Product {existing.data.product_id} not found")

    def _mutate(d: NegotiationData) -> None:
        if d.seller_id != seller_id:
            raise Unauthorized("Unauthorized to send counter-offer")
        if d.status != "PENDING":
            raise InvalidState(f"Cannot send counter-offer for this negotiation status ({d.status})")
        if counter <= 0:
            raise ValidationError("Counter-offer amount must be greater than 0")
        if counter <= d.buyer_offer:
            raise ValidationError("Counter-offer must be higher than buyer's offer")
        if counter > product.base_price * MAX_PRICE_FACTOR:
            raise ValidationError("Counter-offer cannot exceed 150% of base price")
        d.seller_counter_offer = counter
        d.seller_message = message
        d.status = "COUNTERED"
        d.countered_at = now

    negotiation = await _negotiation_cas_retry(negotiation_id, _mutate)
    logger.info(f"Counter-offer sent: {negotiation_id} by seller: {seller_id}")

    await notification_send(
        negotiation.data.buyer_id,
        "Counter-Offer Received",
        f"The seller has sent a counter-offer of {counter} {product.currency} for {product.title}",
        _notification_data(negotiation, sellerId=seller_id, counterOffer=counter),
    )
    await event_publish(negotiation_event(negotiation, "COUNTERED", actor_id=seller_id))
    return negotiation


async def negotiation_accept(
    negotiation_id: str,
    buyer_id: str,
    now: Optional[datetime] = None,
) -> Negotiation:
    """Buyer accepts the counter-offer; the agreed price is settled into the cart.

    A settlement failure is recorded on the negotiation and retried by the
    reconciliation sweep; it does not fail the acceptance.
    """
    now = as_utc(now) or utc_now()
    existing = await _negotiation_require(negotiation_id)
    if existing.data.buyer_id != buyer_id:
        raise Unauthorized("Unauthorized to accept this negotiation")

    product: Optional[ProductSnapshot] = await product_get(existing.data.product_id)

    def _mutate(d: NegotiationData) -> None:
        if d.buyer_id != buyer_id:
            raise Unauthorized("Unauthorized to accept this negotiation")
        if d.status != "COUNTERED":
            raise InvalidState(f"Cannot accept counter-offer for this negotiation status ({d.status})")
        if product is None or product.status != "ACTIVE":
            raise InvalidState("Product is no longer available")
        d.status = "ACCEPTED"
        d.closed_at = now
        d.closed_by = buyer_id
        d.settlement = settlement_new(
            "negotiation",
            negotiation_id,
            buyer_id,
            d.product_id,
            d.seller_counter_offer,
            product.min_order_quantity or 1,
        )

    negotiation = await _negotiation_cas_retry(negotiation_id, _mutate)
    logger.info(f"Negotiation accepted: {negotiation_id} by buyer: {buyer_id}")

    failure = await settlement_run("negotiation", negotiation_id)
    if failure:
        logger.warning(f"Negotiation {negotiation_id} accepted but not yet settled: {failure}")

    await notification_send(
        negotiation.data.seller_id,
        "Negotiation Accepted",
        f"The buyer has accepted your counter-offer of {negotiation.data.seller_counter_offer} "
        f"{product.currency} for {product.title}",
        _notification_data(negotiation, buyerId=buyer_id, acceptedPrice=negotiation.data.seller_counter_offer),
    )
    await event_publish(negotiation_event(negotiation, "ACCEPTED", actor_id=buyer_id))
    return await Negotiation.get(negotiation_id) or negotiation


async def negotiation_decline(
    negotiation_id: str,
    buyer_id: str,
    now: Optional[datetime] = None,
) -> Negotiation:
    now = as_utc(now) or utc_now()

    def _mutate(d: NegotiationData) -> None:
        if d.buyer_id != buyer_id:
            raise Unauthorized("Unauthorized to decline this negotiation")
        if d.status != "COUNTERED":
            raise InvalidState(f"Cannot decline counter-offer for this negotiation status ({d.status})")
        d.status = "DECLINED"
        d.closed_at = now
        d.closed_by = buyer_id

    negotiation = await _negotiation_cas_retry(negotiation_id, _mutate)
    logger.info(f"Negotiation declined: {negotiation_id} by buyer: {buyer_id}")

    await notification_send(
        negotiation.data.seller_id,
        "Negotiation Declined",
        "The buyer has declined your counter-offer",
        _notification_data(negotiation, buyerId=buyer_id),
    )
    await event_publish(negotiation_event(negotiation, "DECLINED", actor_id=buyer_id))
    return negotiation


async def negotiation_cancel(
    negotiation_id: str,
    user_id: str,
    now: Optional[datetime] = None,
) -> Negotiation:
    """Either party withdraws from an open negotiation."""
    now = as_utc(now) or utc_now()

    def _mutate(d: NegotiationData) -> None:
        if user_id not in (d.buyer_id, d.seller_id):
            raise Unauthorized("Unauthorized to cancel this negotiation")
        if d.status not in OPEN_STATUSES:
            raise InvalidState(f"Cannot cancel negotiation in this status ({d.status})")
        d.status = "CANCELLED"
        d.closed_at = now
        d.closed_by = user_id

    negotiation = await _negotiation_cas_retry(negotiation_id, _mutate)
    logger.info(f"Negotiation cancelled: {negotiation_id} by user: {user_id}")

    d = negotiation.data
    other_party = d.seller_id if user_id == d.buyer_id else d.buyer_id
    await notification_send(
        other_party,
        "Negotiation Cancelled",
        "A negotiation you are part of was cancelled",
        _notification_data(negotiation, cancelledBy=user_id),
    )
    await event_publish(negotiation_event(negotiation, "NEGOTIATION_CANCELLED", actor_id=user_id))
    return negotiation


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def negotiation_get(negotiation_id: str, user_id: str) -> Negotiation:
    """A negotiation visible to *user_id*; anyone else gets NotFound."""
    negotiation = await Negotiation.get(negotiation_id)
    if not negotiation or user_id not in (negotiation.data.buyer_id, negotiation.data.seller_id):
        raise NotFound("Negotiation not found or access denied")
    return negotiation


async def negotiation_get_by_user(
    user_id: str,
    role: Optional[Literal["buyer", "seller"]] = None,
    limit: int = 100,
) -> List[Negotiation]:
    if role == "buyer":
        where = "buyer_id = $user_id"
    elif role == "seller":
        where = "seller_id = $user_id"
    else:
        where = "(buyer_id = $user_id OR seller_id = $user_id)"
    return await Negotiation.find(where, order_by="created_at DESC", limit=limit, user_id=user_id)


async def negotiation_find_open(after_id: str = "", limit: int = DEFAULT_SWEEP_LIMIT) -> List[Negotiation]:
    """One page of open negotiations with a key greater than *after_id*, in key order."""
    return await Negotiation.find(
        "status IN ['PENDING', 'COUNTERED'] AND META().id > $after_id",
        order_by="META().id ASC",
        limit=limit,
        after_id=after_id,
    )


async def negotiation_iter_open(page_size: Optional[int] = None) -> AsyncIterator[Negotiation]:
    """Every open negotiation, paged by document key until the query is exhausted."""
    page_size = page_size or DEFAULT_SWEEP_LIMIT
    after_id = ""
    while True:
        page = await negotiation_find_open(after_id=after_id, limit=page_size)
        for negotiation in page:
            yield negotiation
        if len(page) < page_size:
            return
        after_id = page[-1].id


# ---------------------------------------------------------------------------
# Expiry sweep
# ---------------------------------------------------------------------------

async def negotiation_expire(negotiation_id: str, now: datetime) -> Optional[Negotiation]:
    """PENDING/COUNTERED → EXPIRED. None if it already left the open states."""

    def _mutate(d: NegotiationData) -> None:
        if d.status not in OPEN_STATUSES:
            raise NoChange()
        d.status = "EXPIRED"
        d.closed_at = now

    return await _negotiation_cas_retry(negotiation_id, _mutate)


async def _negotiation_expire_candidate(
    candidate: Negotiation,
    now: datetime,
    products: Dict[str, Optional[ProductSnapshot]],
    result: SweepResult,
) -> None:
    d = candidate.data
    try:
        if d.product_id not in products:
            products[d.product_id] = await product_get(d.product_id)
        product = products[d.product_id]

        timed_out = d.expires_at is not None and d.expires_at <= now
        product_gone = product is None or product.status != "ACTIVE"
        if not (timed_out or product_gone):
            return

        negotiation = await negotiation_expire(candidate.id, now)
    except Exception as e:
        logger.error(f"Failed to expire negotiation {candidate.id}: {e}", exc_info=True)
        result.record_error(candidate.id, e)
        return
    if negotiation is None:
        return

    result.record(negotiation.id)
    title = product.title if product else d.product_id
    logger.info(
        f"Negotiation expired: {negotiation.id} "
        f"({'time limit reached' if timed_out else 'product no longer available'})"
    )
    await notification_send(
        negotiation.data.buyer_id,
        "Negotiation Expired",
        f"Your negotiation for {title} has expired",
        _notification_data(negotiation),
    )
    await notification_send(
        negotiation.data.seller_id,
        "Negotiation Expired",
        f"Negotiation for {title} has expired",
        _notification_data(negotiation),
    )
    await event_publish(negotiation_event(negotiation, "EXPIRED"))


async def negotiation_expire_due(now: Optional[datetime] = None) -> SweepResult:
    """Expire open negotiations past ``expires_at`` or whose product is no longer ACTIVE.

    Walks every open negotiation page by page, so a due negotiation is never
    hidden behind open ones that are not due yet.
    """
    now = as_utc(now) or utc_now()
    result = SweepResult()
    products: Dict[str, Optional[ProductSnapshot]] = {}

    try:
        async for candidate in negotiation_iter_open():
            await _negotiation_expire_candidate(candidate, now, products, result)
    except Exception as e:
        logger.error(f"Negotiation expiry sweep: query failed: {e}")
        result.record_error("*", e)

    logger.info(f"Negotiation expiry sweep: {result.processed} negotiations expired")
    await event_publish_sweep("negotiation_expiry", result, now)
    return result
