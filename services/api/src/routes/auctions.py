"""
API endpoints for auctions and bidding.

POST   /auctions/              create the auction of a product listing (seller)
GET    /auctions/              search auctions (public)
GET    /auctions/me            seller's own auctions
GET    /auctions/bids/me       caller's bid history
GET    /auctions/{id}          auction detail
GET    /auctions/{id}/bids     bid history, highest first
POST   /auctions/{id}/bid      place a bid
POST   /auctions/{id}/restart  restart an ended auction (seller)
POST   /auctions/{id}/cancel   cancel an auction (seller or admin)
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from models.entities.couchbase.auctions import Auction
from models.entities.couchbase.bids import Bid
from models.entities.couchbase.settlements import Settlement
from models.errors import EngineError
from models.operations.auctions import (
    auction_cancel,
    auction_create,
    auction_get,
    auction_get_by_seller,
    auction_place_bid,
    auction_restart,
    auction_search,
)
from models.operations.bids import bid_get_by_auction, bid_get_by_bidder
from utils import log

from .dependencies import current_user_id, engine_error_to_http, is_admin

logger = log.get_logger(__name__)

router = APIRouter(prefix="/auctions", tags=["auctions"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class CreateAuctionRequest(BaseModel):
    product_id: str
    starting_price: float
    bid_increment: float
    start_time: datetime
    end_time: datetime
    reserve_price: Optional[float] = None
    quantity: float = 1


class PlaceBidRequest(BaseModel):
    amount: float


class RestartAuctionRequest(BaseModel):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class BidResponse(BaseModel):
    id: str
    auction_id: str
    bidder_id: str
    amount: float
    status: str
    placed_at: datetime


class AuctionResponse(BaseModel):
    id: str
    product_id: str
    seller_id: str
    auction_type: str
    starting_price: float
    reserve_price: Optional[float] = None
    bid_increment: float
    quantity: float
    start_time: datetime
    end_time: datetime
    status: str
    current_bid: float
    minimum_bid: float
    bid_count: int
    winner_id: Optional[str] = None
    winning_price: Optional[float] = None
    ended_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    restart_count: int
    settlement: Optional[Settlement] = None


def _auction_to_response(auction: Auction) -> AuctionResponse:
    d = auction.data
    return AuctionResponse(
        id=auction.id,
        product_id=d.product_id,
        seller_id=d.seller_id,
        auction_type=d.auction_type,
        starting_price=d.starting_price,
        reserve_price=d.reserve_price,
        bid_increment=d.bid_increment,
        quantity=d.quantity,
        start_time=d.start_time,
        end_time=d.end_time,
        status=d.status,
        current_bid=d.current_bid,
        minimum_bid=d.current_bid + d.bid_increment,
        bid_count=d.bid_count,
        winner_id=d.winner_id,
        winning_price=d.winning_price,
        ended_at=d.ended_at,
        cancelled_at=d.cancelled_at,
        restart_count=d.restart_count,
        settlement=d.settlement,
    )


def _bid_to_response(bid: Bid) -> BidResponse:
    return BidResponse(
        id=bid.id,
        auction_id=bid.auction_id,
        bidder_id=bid.bidder_id,
        amount=bid.amount,
        status=bid.status,
        placed_at=bid.placed_at,
    )


# ---------------------------------------------------------------------------
# POST /auctions/: create auction
# ---------------------------------------------------------------------------

@router.post("/", response_model=AuctionResponse, status_code=201)
async def route_auction_create(body: CreateAuctionRequest, user_id: str = Depends(current_user_id)):
    try:
        auction = await auction_create(
            product_id=body.product_id,
            seller_id=user_id,
            starting_price=body.starting_price,
            bid_increment=body.bid_increment,
            start_time=body.start_time,
            end_time=body.end_time,
            reserve_price=body.reserve_price,
            quantity=body.quantity,
        )
    except EngineError as e:
        raise engine_error_to_http(e)
    return _auction_to_response(auction)


# ---------------------------------------------------------------------------
# GET /auctions/: search
# ---------------------------------------------------------------------------

@router.get("/", response_model=List[AuctionResponse])
async def route_auctions_search(
    status: Optional[str] = "ACTIVE",
    product_id: Optional[str] = None,
    seller_id: Optional[str] = None,
    limit: int = Query(default=50, le=100),
    offset: int = Query(default=0, ge=0),
):
    """Search auctions, soonest ending first."""
    auctions = await auction_search(
        status=status.upper() if status else None,
        product_id=product_id,
        seller_id=seller_id,
        limit=limit,
        offset=offset,
    )
    return [_auction_to_response(a) for a in auctions]


@router.get("/me", response_model=List[AuctionResponse])
async def route_auctions_mine(user_id: str = Depends(current_user_id)):
    auctions = await auction_get_by_seller(user_id)
    return [_auction_to_response(a) for a in auctions]


@router.get("/bids/me", response_model=List[BidResponse])
async def route_bids_mine(
    user_id: str = Depends(current_user_id),
    limit: int = Query(default=50, le=200),
    offset: int = Query(default=0, ge=0),
):
    bids = await bid_get_by_bidder(user_id, limit=limit, offset=offset)
    return [_bid_to_response(b) for b in bids]


@router.get("/{auction_id}", response_model=AuctionResponse)
async def route_auction_detail(auction_id: str):
    auction = await auction_get(auction_id)
    if not auction:
        raise HTTPException(status_code=404, detail="Auction not found")
    return _auction_to_response(auction)


@router.get("/{auction_id}/bids", response_model=List[BidResponse])
async def route_auction_bids(auction_id: str):
    """Bid history of an auction, ordered by amount descending."""
    try:
        bids = await bid_get_by_auction(auction_id)
    except EngineError as e:
        raise engine_error_to_http(e)
    return [_bid_to_response(b) for b in bids]


# ---------------------------------------------------------------------------
# POST /auctions/{id}/bid: place a bid
# ---------------------------------------------------------------------------

@router.post("/{auction_id}/bid", response_model=BidResponse, status_code=201)
async def route_place_bid(
    auction_id: str,
    body: PlaceBidRequest,
    user_id: str = Depends(current_user_id),
):
    try:
        _, bid = await auction_place_bid(auction_id=auction_id, bidder_id=user_id, amount=body.amount)
    except EngineError as e:
        raise engine_error_to_http(e)
    return _bid_to_response(bid)


@router.post("/{auction_id}/restart", response_model=AuctionResponse)
async def route_auction_restart(
    auction_id: str,
    body: Optional[RestartAuctionRequest] = None,
    user_id: str = Depends(current_user_id),
):
    """Restart an ended auction. All previous bids are discarded."""
    body = body or RestartAuctionRequest()
    try:
        auction = await auction_restart(
            auction_id,
            seller_id=user_id,
            new_start_time=body.start_time,
            new_end_time=body.end_time,
        )
    except EngineError as e:
        raise engine_error_to_http(e)
    return _auction_to_response(auction)


@router.post("/{auction_id}/cancel", response_model=AuctionResponse)
async def route_auction_cancel(
    auction_id: str,
    user_id: str = Depends(current_user_id),
    admin: bool = Depends(is_admin),
):
    """Cancel an auction. Sellers may only cancel while there are no bids."""
    try:
        auction = await auction_cancel(auction_id, actor_id=user_id, is_admin=admin)
    except EngineError as e:
        raise engine_error_to_http(e)
    return _auction_to_response(auction)
