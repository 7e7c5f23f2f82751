"""
Auction business logic with CAS-guarded atomic operations.

States: SCHEDULED → ACTIVE → ENDED, ENDED → ACTIVE/SCHEDULED via seller
restart, SCHEDULED/ACTIVE → CANCELLED.

- Bids live inside the auction document, so ``auction_place_bid`` orders
  concurrent bids with a single CAS-guarded replace: the second writer at a
  price frontier re-reads, sees the new ``current_bid`` and fails validation.
- Sweeps (``auction_start_due``, ``auction_end_due``) re-check the due
  condition on the freshly read document, which makes them idempotent.
- Collaborator calls (product status, settlement, notifications, events)
  happen after the commit and never undo it.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from couchbase.exceptions import DocumentExistsException

from models.clock import as_utc, to_millis, utc_now
from models.collaborators import collaborators_get, product_get
from models.entities.couchbase.auctions import Auction, AuctionData
from models.entities.couchbase.bids import Bid
from models.errors import (
    BidTooLow,
    DependencyFailure,
    InvalidState,
    NotActive,
    NotFound,
    SelfBid,
    Unauthorized,
    ValidationError,
)
from models.operations.cas import NoChange, cas_retry
from models.operations.events import (
    auction_event,
    event_publish,
    event_publish_sweep,
    notification_send,
)
from models.operations.settlements import settlement_new, settlement_run
from models.operations.sweeps import SweepResult

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_LIMIT = 500


def auction_key(product_id: str) -> str:
    """One auction per product listing; restarts reuse the document."""
    return f"auction::{product_id}"


async def _auction_cas_retry(auction_id: str, mutator) -> Optional[Auction]:
    return await cas_retry(Auction, auction_id, mutator)


def _winning_bid(d: AuctionData) -> Optional[Bid]:
    return next((b for b in d.bids if b.status == "WINNING"), None)


async def _product_set_status(product_id: str, status: str) -> Optional[DependencyFailure]:
    try:
        await collaborators_get().products.set_product_status(product_id, status)
        return None
    except Exception as e:
        logger.error(f"Failed to set product {product_id} to {status}: {e}")
        return DependencyFailure(
            f"Product {product_id} status update to {status} failed: {e}",
            {"product_id": product_id, "status": status},
        )


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

async def auction_create(
    product_id: str,
    seller_id: str,
    starting_price: float,
    bid_increment: float,
    start_time: datetime,
    end_time: datetime,
    reserve_price: Optional[float] = None,
    quantity: float = 1,
    now: Optional[datetime] = None,
) -> Auction:
    """Create the auction for a product listing owned by *seller_id*."""
    now = as_utc(now) or utc_now()
    start_time = as_utc(start_time)
    end_time = as_utc(end_time)

    product = await product_get(product_id)
    if not product:
        raise NotFound(f"Product {product_id} not found")
    if product.seller_id != seller_id:
        raise Unauthorized("Only the product's seller can auction it")
    if product.listing_type != "AUCTION":
        raise ValidationError(f"Product is not an auction listing (type: {product.listing_type})")

    if starting_price <= 0:
        raise ValidationError("Starting price must be greater than 0")
    if bid_increment <= 0:
        raise ValidationError("Bid increment must be greater than 0")
    if reserve_price is not None and reserve_price < starting_price:
        raise ValidationError("Reserve price cannot be below the starting price")
    if quantity <= 0:
        raise ValidationError("Quantity must be greater than 0")
    if end_time <= start_time:
        raise ValidationError("End time must be after start time")
    if end_time <= now:
        raise ValidationError("End time must be in the future")

    data = AuctionData(
        product_id=product_id,
        seller_id=seller_id,
        starting_price=starting_price,
        reserve_price=reserve_price,
        bid_increment=bid_increment,
        quantity=quantity,
        start_time=start_time,
        end_time=end_time,
        status="SCHEDULED" if start_time > now else "ACTIVE",
        current_bid=starting_price,
    )
    try:
        auction = await Auction.create(data, key=auction_key(product_id), user_id=seller_id)
    except DocumentExistsException:
        raise InvalidState(f"Product {product_id} already has an auction")

    logger.info(f"Auction {auction.id} created for product {product_id} ({data.status})")
    if data.status == "ACTIVE":
        await _product_set_status(product_id, "ACTIVE")
    await event_publish(auction_event(auction, "CREATED", actor_id=seller_id))
    return auction


async def auction_get(auction_id: str) -> Optional[Auction]:
    return await Auction.get(auction_id)


async def auction_search(
    status: Optional[str] = "ACTIVE",
    product_id: Optional[str] = None,
    seller_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Auction]:
    conditions = []
    params = {}
    if status:
        conditions.append("status = $status")
        params["status"] = status
    if product_id:
        conditions.append("product_id = $product_id")
        params["product_id"] = product_id
    if seller_id:
        conditions.append("seller_id = $seller_id")
        params["seller_id"] = seller_id

    where = " AND ".join(conditions) if conditions else "1=1"
    return await Auction.find(where, order_by="end_time ASC", limit=limit, offset=offset, **params)


async def auction_get_by_seller(seller_id: str, limit: int = 100) -> List[Auction]:
    return await Auction.find(
        "seller_id = $seller_id", order_by="created_at DESC", limit=limit, seller_id=seller_id
    )


async def auction_find_due_to_start(now: datetime, limit: int = DEFAULT_SWEEP_LIMIT) -> List[Auction]:
    return await Auction.find(
        "status = 'SCHEDULED' AND STR_TO_MILLIS(start_time) <= $now_ms",
        order_by="start_time ASC",
        limit=limit,
        now_ms=to_millis(now),
    )


async def auction_find_due_to_end(now: datetime, limit: int = DEFAULT_SWEEP_LIMIT) -> List[Auction]:
    return await Auction.find(
        "status = 'ACTIVE' AND STR_TO_MILLIS(end_time) <= $now_ms",
        order_by="end_time ASC",
        limit=limit,
        now_ms=to_millis(now),
    )


async def auction_find_ending_between(
    window_start: datetime, window_end: datetime, limit: int = DEFAULT_SWEEP_LIMIT
) -> List[Auction]:
    return await Auction.find(
        "status = 'ACTIVE' AND ending_soon_notified = false "
        "AND STR_TO_MILLIS(end_time) BETWEEN $start_ms AND $end_ms",
        order_by="end_time ASC",
        limit=limit,
        start_ms=to_millis(window_start),
        end_ms=to_millis(window_end),
    )


# ---------------------------------------------------------------------------
# Bid placement (CAS-critical)
# ---------------------------------------------------------------------------

async def auction_place_bid(
    auction_id: str,
    bidder_id: str,
    amount: float,
    now: Optional[datetime] = None,
) -> Tuple[Auction, Bid]:
    """
    Atomically place a bid on an auction.

    CAS flow:
    1. Read auction with CAS
    2. Validate status, time window, bidder and amount against that read
    3. Demote the WINNING bid to OUTBID, append the new bid as WINNING
    4. Set current_bid = amount, bid_count += 1
    5. Replace with CAS; on mismatch go back to 1

    Raises NotActive, SelfBid, BidTooLow, NotFound or Conflict.
    """
    if amount <= 0:
        raise BidTooLow("Bid amount must be greater than 0")

    fixed_now = as_utc(now)
    bid_id = str(uuid.uuid4())
    placed: dict = {}

    def _mutate(d: AuctionData) -> None:
        current = fixed_now or utc_now()
        if d.status != "ACTIVE":
            raise NotActive(f"Auction is not active (status: {d.status})")
        if not (d.start_time <= current < d.end_time):
            raise NotActive("Auction is outside its bidding window")
        if bidder_id == d.seller_id:
            raise SelfBid("Sellers cannot bid on their own auction")

        min_bid = d.current_bid + d.bid_increment
        if amount < min_bid:
            raise BidTooLow(
                f"Bid must be at least {min_bid:.2f}",
                {"minimum_bid": min_bid, "current_bid": d.current_bid},
            )

        previous = _winning_bid(d)
        if previous is not None:
            previous.status = "OUTBID"

        bid = Bid(
            id=bid_id,
            auction_id=auction_id,
            bidder_id=bidder_id,
            amount=amount,
            status="WINNING",
            placed_at=current,
        )
        d.bids.append(bid)
        d.current_bid = amount
        d.bid_count += 1

        placed["bid"] = bid
        placed["previous"] = previous

    auction = await _auction_cas_retry(auction_id, _mutate)
    bid: Bid = placed["bid"]
    previous: Optional[Bid] = placed["previous"]

    logger.info(f"Bid {bid.id} placed on auction {auction_id} by {bidder_id}: {amount}")

    await event_publish(auction_event(auction, "BID_PLACED", actor_id=bidder_id, amount=amount))
    if previous is not None and previous.bidder_id != bidder_id:
        await notification_send(
            previous.bidder_id,
            "You Have Been Outbid",
            f"Your bid of {previous.amount} was outbid with {amount}.",
            {"auctionId": auction_id, "productId": auction.data.product_id, "currentBid": amount},
        )
    await notification_send(
        auction.data.seller_id,
        "New Bid Received",
        f"A bid of {amount} was placed on your auction.",
        {"auctionId": auction_id, "productId": auction.data.product_id, "bidId": bid.id, "amount": amount},
    )
    return auction, bid


# ---------------------------------------------------------------------------
# Lifecycle transitions
# ---------------------------------------------------------------------------

async def auction_activate(auction_id: str, now: datetime) -> Optional[Auction]:
    """SCHEDULED → ACTIVE once start_time has passed. None if not due any more."""

    def _mutate(d: AuctionData) -> None:
        if d.status != "SCHEDULED" or d.start_time > now:
            raise NoChange()
        d.status = "ACTIVE"

    return await _auction_cas_retry(auction_id, _mutate)


async def auction_end(auction_id: str, now: datetime) -> Optional[Auction]:
    """ACTIVE → ENDED once end_time has passed, deciding the winner in the same write.

    The WINNING bid wins when there is no reserve or it meets the reserve;
    it becomes WON and every other bid LOST. Without a winner all bids are
    LOST. Returns None when the auction is not due (already ended, restarted).
    """

    def _mutate(d: AuctionData) -> None:
        if d.status != "ACTIVE" or d.end_time > now:
            raise NoChange()

        top = _winning_bid(d)
        reserve_met = top is not None and (d.reserve_price is None or top.amount >= d.reserve_price)
        winner = top if reserve_met else None

        for b in d.bids:
            b.status = "WON" if winner is not None and b.id == winner.id else "LOST"

        d.status = "ENDED"
        d.ended_at = now
        if winner is not None:
            d.winner_id = winner.bidder_id
            d.winning_bid_id = winner.id
            d.winning_price = winner.amount
            d.settlement = settlement_new(
                "auction",
                auction_id,
                winner.bidder_id,
                d.product_id,
                winner.amount,
                d.quantity,
                restart_round=d.restart_count,
            )

    return await _auction_cas_retry(auction_id, _mutate)


async def _auction_after_end(auction: Auction) -> List[DependencyFailure]:
    """Post-commit fan-out of an ended auction. Returns collaborator failures."""
    d = auction.data
    failures: List[DependencyFailure] = []
    has_winner = d.winner_id is not None

    failure = await _product_set_status(d.product_id, "SOLD" if has_winner else "ACTIVE")
    if failure:
        failures.append(failure)

    if has_winner:
        failure = await settlement_run("auction", auction.id)
        if failure:
            failures.append(failure)
        await notification_send(
            d.winner_id,
            "Auction Won",
            f"You won the auction with a bid of {d.winning_price}.",
            {"auctionId": auction.id, "productId": d.product_id, "price": d.winning_price},
        )
        outcome = f"sold for {d.winning_price}"
    elif d.bid_count:
        outcome = "ended without a winner: reserve price not met"
    else:
        outcome = "ended without bids"

    await notification_send(
        d.seller_id,
        "Auction Ended",
        f"Your auction {outcome}.",
        {"auctionId": auction.id, "productId": d.product_id, "winnerId": d.winner_id, "price": d.winning_price},
    )
    losers = {b.bidder_id for b in d.bids if b.status == "LOST" and b.bidder_id != d.winner_id}
    for bidder_id in sorted(losers):
        await notification_send(
            bidder_id,
            "Auction Ended",
            "The auction you bid on has ended without your bid winning.",
            {"auctionId": auction.id, "productId": d.product_id},
        )

    await event_publish(auction_event(auction, "ENDED", winning_price=d.winning_price))
    return failures


async def auction_start_due(now: Optional[datetime] = None) -> SweepResult:
    """Start every SCHEDULED auction whose start_time has passed."""
    now = as_utc(now) or utc_now()
    result = SweepResult()

    try:
        candidates = await auction_find_due_to_start(now)
    except Exception as e:
        logger.error(f"Auction start sweep: query failed: {e}")
        result.record_error("*", e)
        await event_publish_sweep("auction_start", result, now)
        return result

    for candidate in candidates:
        try:
            auction = await auction_activate(candidate.id, now)
        except Exception as e:
            logger.error(f"Failed to start auction {candidate.id}: {e}", exc_info=True)
            result.record_error(candidate.id, e)
            continue
        if auction is None:
            continue

        result.record(auction.id)
        logger.info(f"Auction started: {auction.id}")
        failure = await _product_set_status(auction.data.product_id, "ACTIVE")
        if failure:
            result.record_error(auction.id, failure)
        await notification_send(
            auction.data.seller_id,
            "Auction Started",
            "Your auction is now live.",
            {"auctionId": auction.id, "productId": auction.data.product_id},
        )
        await event_publish(auction_event(auction, "STARTED"))

    if candidates:
        logger.info(f"Auction start sweep: {result.processed}/{len(candidates)} started")
    await event_publish_sweep("auction_start", result, now)
    return result


async def auction_end_due(now: Optional[datetime] = None) -> SweepResult:
    """End every ACTIVE auction whose end_time has passed and settle winners."""
    now = as_utc(now) or utc_now()
    result = SweepResult()

    try:
        candidates = await auction_find_due_to_end(now)
    except Exception as e:
        logger.error(f"Auction end sweep: query failed: {e}")
        result.record_error("*", e)
        await event_publish_sweep("auction_end", result, now)
        return result

    for candidate in candidates:
        try:
            auction = await auction_end(candidate.id, now)
        except Exception as e:
            logger.error(f"Failed to end auction {candidate.id}: {e}", exc_info=True)
            result.record_error(candidate.id, e)
            continue
        if auction is None:
            continue

        result.record(auction.id)
        logger.info(
            f"Auction ended: {auction.id}, winner={auction.data.winner_id}, "
            f"price={auction.data.winning_price}"
        )
        for failure in await _auction_after_end(auction):
            result.record_error(auction.id, failure)

    if candidates:
        logger.info(f"Auction end sweep: {result.processed}/{len(candidates)} ended")
    await event_publish_sweep("auction_end", result, now)
    return result


async def auction_restart(
    auction_id: str,
    seller_id: str,
    new_start_time: Optional[datetime] = None,
    new_end_time: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Auction:
    """Restart an ENDED auction from scratch: all prior bids are discarded.

    Defaults: start = now, end = start + the previous duration.
    """
    now = as_utc(now) or utc_now()
    new_start_time = as_utc(new_start_time)
    new_end_time = as_utc(new_end_time)

    def _mutate(d: AuctionData) -> None:
        if d.seller_id != seller_id:
            raise Unauthorized("Only the product's seller can restart this auction")
        if d.status != "ENDED":
            raise InvalidState(f"Only ended auctions can be restarted (status: {d.status})")

        duration: timedelta = d.end_time - d.start_time
        start = new_start_time or now
        end = new_end_time or start + duration
        if end <= start:
            raise ValidationError("End time must be after start time")
        if end <= now:
            raise ValidationError("End time must be in the future")

        d.bids = []
        d.current_bid = d.starting_price
        d.bid_count = 0
        d.start_time = start
        d.end_time = end
        d.status = "ACTIVE" if start <= now else "SCHEDULED"
        d.winner_id = None
        d.winning_bid_id = None
        d.winning_price = None
        d.ended_at = None
        d.settlement = None
        d.ending_soon_notified = False
        d.restart_count += 1

    auction = await _auction_cas_retry(auction_id, _mutate)
    logger.info(
        f"Auction restarted: {auction_id} ({auction.data.status}) "
        f"{auction.data.start_time.isoformat()} → {auction.data.end_time.isoformat()}"
    )
    if auction.data.status == "ACTIVE":
        await _product_set_status(auction.data.product_id, "ACTIVE")
    await event_publish(auction_event(auction, "RESTARTED", actor_id=seller_id))
    return auction


async def auction_cancel(
    auction_id: str,
    actor_id: str,
    is_admin: bool = False,
    now: Optional[datetime] = None,
) -> Auction:
    """SCHEDULED/ACTIVE → CANCELLED.

    Administrators may always cancel; the seller only while there are no bids.
    """
    now = as_utc(now) or utc_now()

    def _mutate(d: AuctionData) -> None:
        if not is_admin and d.seller_id != actor_id:
            raise Unauthorized("Only the seller or an administrator can cancel this auction")
        if d.status not in ("SCHEDULED", "ACTIVE"):
            raise InvalidState(f"Cannot cancel auction with status: {d.status}")
        if not is_admin and d.bid_count > 0:
            raise InvalidState("Cannot cancel auction with existing bids")
        for b in d.bids:
            b.status = "LOST"
        d.status = "CANCELLED"
        d.cancelled_at = now

    auction = await _auction_cas_retry(auction_id, _mutate)
    logger.info(f"Auction cancelled: {auction_id} by {actor_id}")

    await _product_set_status(auction.data.product_id, "ACTIVE")
    for bidder_id in sorted({b.bidder_id for b in auction.data.bids}):
        await notification_send(
            bidder_id,
            "Auction Cancelled",
            "An auction you bid on was cancelled.",
            {"auctionId": auction_id, "productId": auction.data.product_id},
        )
    await event_publish(auction_event(auction, "CANCELLED", actor_id=actor_id))
    return auction


async def auction_notify_ending_soon(
    now: Optional[datetime] = None,
    window_start: timedelta = timedelta(hours=1),
    window_end: timedelta = timedelta(hours=2),
) -> SweepResult:
    """Tell every bidder of an auction ending inside the window, once per auction."""
    now = as_utc(now) or utc_now()
    result = SweepResult()

    try:
        candidates = await auction_find_ending_between(now + window_start, now + window_end)
    except Exception as e:
        logger.error(f"Ending-soon sweep: query failed: {e}")
        result.record_error("*", e)
        await event_publish_sweep("auction_ending_soon", result, now)
        return result

    def _mutate(d: AuctionData) -> None:
        if d.status != "ACTIVE" or d.ending_soon_notified:
            raise NoChange()
        d.ending_soon_notified = True

    for candidate in candidates:
        try:
            auction = await _auction_cas_retry(candidate.id, _mutate)
        except Exception as e:
            logger.error(f"Failed to flag auction {candidate.id} as ending soon: {e}")
            result.record_error(candidate.id, e)
            continue
        if auction is None:
            continue

        result.record(auction.id)
        for bidder_id in sorted({b.bidder_id for b in auction.data.bids}):
            await notification_send(
                bidder_id,
                "Auction Ending Soon",
                f"An auction you bid on ends at {auction.data.end_time.isoformat()}.",
                {
                    "auctionId": auction.id,
                    "productId": auction.data.product_id,
                    "currentBid": auction.data.current_bid,
                },
            )
        await event_publish(auction_event(auction, "ENDING_SOON"))

    logger.info(f"Sent ending soon notifications for {result.processed} auctions")
    await event_publish_sweep("auction_ending_soon", result, now)
    return result
