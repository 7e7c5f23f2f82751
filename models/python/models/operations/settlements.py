"""
Settlement coordinator: reserve the agreed item for the winning party.

The winning transition (auction ended with a winner, negotiation accepted)
writes a ``pending`` settlement in the same CAS write that changes the
status. ``settlement_run`` then reserves the item in the beneficiary's cart
and records the outcome. The cart deduplicates on the idempotency key
(``auction:<id>:<round>`` / ``negotiation:<id>``), so running a settlement
twice never reserves twice. A restarted auction keeps its document id, so its
key carries the restart round. A failure leaves the settlement ``failed`` for
``settlement_reconcile`` to retry; the transition itself is never undone.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Literal, Optional, Union

from models.collaborators import Provenance, collaborators_get
from models.entities.couchbase.auctions import Auction
from models.entities.couchbase.negotiations import Negotiation
from models.entities.couchbase.settlements import Settlement
from models.errors import DependencyFailure, NotFound
from models.operations.cas import NoChange, cas_retry
from models.operations.events import (
    EntityEvent,
    event_publish,
    event_publish_sweep,
    notification_send,
)
from models.operations.sweeps import SweepResult

logger = logging.getLogger(__name__)

SettlementSource = Literal["auction", "negotiation"]

DEFAULT_MAX_ATTEMPTS = 10

_ENTITY_BY_SOURCE = {
    "auction": Auction,
    "negotiation": Negotiation,
}


def settlement_new(
    source: SettlementSource,
    source_id: str,
    beneficiary_id: str,
    product_id: str,
    price: float,
    quantity: float,
    restart_round: Optional[int] = None,
) -> Settlement:
    idempotency_key = f"{source}:{source_id}"
    if restart_round is not None:
        idempotency_key += f":{restart_round}"
    return Settlement(
        status="pending",
        beneficiary_id=beneficiary_id,
        product_id=product_id,
        price=price,
        quantity=quantity,
        idempotency_key=idempotency_key,
    )


async def settlement_run(source: SettlementSource, source_id: str) -> Optional[DependencyFailure]:
    """Reserve the settled item in the beneficiary's cart.

    Returns None when the settlement is reserved (now or earlier) or there
    is nothing to settle, and a ``DependencyFailure`` when the cart or the
    bookkeeping write failed.
    """
    entity_cls = _ENTITY_BY_SOURCE[source]
    entity = await entity_cls.get(source_id)
    if not entity:
        raise NotFound(f"{source.capitalize()} {source_id} not found")

    s = entity.data.settlement
    if s is None or s.status == "reserved":
        return None

    provenance = Provenance(source=source, source_id=source_id, idempotency_key=s.idempotency_key)
    attempted_at = datetime.now(timezone.utc)

    try:
        reservation_id = await collaborators_get().carts.reserve(
            s.beneficiary_id,
            s.product_id,
            s.quantity,
            s.price,
            provenance.model_dump(),
        )
    except Exception as e:
        logger.error(f"Settlement of {source} {source_id} failed: {e}")
        await _settlement_mark_failed(entity_cls, source_id, str(e), attempted_at)
        return DependencyFailure(
            f"Cart reservation failed for {source} {source_id}: {e}",
            {"source": source, "source_id": source_id},
        )

    def _mark_reserved(d) -> None:
        if d.settlement is None or d.settlement.status == "reserved":
            raise NoChange()
        d.settlement.status = "reserved"
        d.settlement.reservation_id = reservation_id
        d.settlement.attempts += 1
        d.settlement.last_error = None
        d.settlement.last_attempt_at = attempted_at
        d.settlement.reserved_at = datetime.now(timezone.utc)

    try:
        updated = await cas_retry(entity_cls, source_id, _mark_reserved)
    except Exception as e:
        # The cart holds the reservation; reconciliation re-runs the
        # idempotent reserve and records it.
        logger.error(f"Settlement of {source} {source_id} reserved but not recorded: {e}")
        return DependencyFailure(
            f"Reservation for {source} {source_id} not recorded: {e}",
            {"source": source, "source_id": source_id, "reservation_id": reservation_id},
        )

    if updated is None:
        return None

    logger.info(
        f"Settled {source} {source_id}: reservation={reservation_id} "
        f"beneficiary={s.beneficiary_id} price={s.price} quantity={s.quantity}"
    )
    await notification_send(
        s.beneficiary_id,
        "Item Reserved In Cart",
        f"Your {source} for product {s.product_id} was settled at {s.price}; "
        f"{s.quantity:g} unit(s) are reserved in your cart.",
        {
            f"{source}Id": source_id,
            "productId": s.product_id,
            "price": s.price,
            "quantity": s.quantity,
            "reservationId": reservation_id,
        },
    )
    await event_publish(
        EntityEvent(
            entity_type=source,
            entity_id=source_id,
            event_type="SETTLED",
            status=updated.data.status,
            timestamp=datetime.now(timezone.utc),
            amounts={"price": s.price, "quantity": s.quantity},
            related_product_id=s.product_id,
            actor_id=s.beneficiary_id,
        )
    )
    return None


async def _settlement_mark_failed(
    entity_cls: Union[type[Auction], type[Negotiation]],
    source_id: str,
    error: str,
    attempted_at: datetime,
) -> None:
    def _mutate(d) -> None:
        if d.settlement is None or d.settlement.status == "reserved":
            raise NoChange()
        d.settlement.status = "failed"
        d.settlement.attempts += 1
        d.settlement.last_error = error[:500]
        d.settlement.last_attempt_at = attempted_at

    try:
        await cas_retry(entity_cls, source_id, _mutate)
    except Exception as e:
        logger.error(f"Could not record settlement failure on {entity_cls.__name__} {source_id}: {e}")


async def settlement_find_unsettled(
    source: SettlementSource,
    stale_before: datetime,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    limit: int = 100,
) -> List[Union[Auction, Negotiation]]:
    """Failed settlements, and pending ones nobody has touched since *stale_before*."""
    entity_cls = _ENTITY_BY_SOURCE[source]
    return await entity_cls.find(
        "settlement IS VALUED "
        "AND settlement.attempts < $max_attempts "
        "AND (settlement.status = 'failed' "
        "OR (settlement.status = 'pending' "
        "AND STR_TO_MILLIS(IFMISSINGORNULL(settlement.last_attempt_at, updated_at)) <= $stale_ms))",
        order_by="updated_at ASC",
        limit=limit,
        max_attempts=max_attempts,
        stale_ms=int(stale_before.timestamp() * 1000),
    )


async def settlement_reconcile(
    now: Optional[datetime] = None,
    grace_seconds: int = 60,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> SweepResult:
    """Retry settlements that failed or stalled after their transition committed."""
    now = now or datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=grace_seconds)
    result = SweepResult()

    for source in ("auction", "negotiation"):
        try:
            candidates = await settlement_find_unsettled(source, stale_before, max_attempts)
        except Exception as e:
            logger.error(f"Settlement reconcile: failed to query {source}s: {e}")
            result.record_error(f"{source}:*", e)
            continue

        for entity in candidates:
            try:
                failure = await settlement_run(source, entity.id)
            except Exception as e:
                logger.error(f"Settlement reconcile: {source} {entity.id} raised: {e}", exc_info=True)
                result.record_error(entity.id, e)
                continue
            if failure is not None:
                result.record_error(entity.id, failure)
            else:
                result.record(entity.id)

    if result.processed or result.errors:
        logger.info(f"Settlement reconcile: {result.processed} settled, {len(result.errors)} still failing")
    await event_publish_sweep("settlement_reconcile", result, now)
    return result
