"""
API endpoints for price negotiations.

POST   /negotiations/              buyer opens a negotiation with an offer
GET    /negotiations/              caller's negotiations (?role=buyer|seller)
GET    /negotiations/{id}          detail, visible to both parties only
POST   /negotiations/{id}/counter  seller counter-offer
POST   /negotiations/{id}/accept   buyer accepts the counter-offer
POST   /negotiations/{id}/decline  buyer declines the counter-offer
POST   /negotiations/{id}/cancel   either party withdraws
"""

from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from models.entities.couchbase.negotiations import Negotiation
from models.entities.couchbase.settlements import Settlement
from models.errors import EngineError
from models.operations.negotiations import (
    negotiation_accept,
    negotiation_cancel,
    negotiation_counter,
    negotiation_create,
    negotiation_decline,
    negotiation_get,
    negotiation_get_by_user,
)
from utils import log

from .dependencies import current_user_id, engine_error_to_http

logger = log.get_logger(__name__)

router = APIRouter(prefix="/negotiations", tags=["negotiations"])


class CreateNegotiationRequest(BaseModel):
    product_id: str
    offer: float
    message: Optional[str] = None


class CounterOfferRequest(BaseModel):
    counter_offer: float
    message: Optional[str] = None


class NegotiationResponse(BaseModel):
    id: str
    product_id: str
    buyer_id: str
    seller_id: str
    buyer_offer: float
    seller_counter_offer: Optional[float] = None
    buyer_message: Optional[str] = None
    seller_message: Optional[str] = None
    status: str
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    settlement: Optional[Settlement] = None


def _negotiation_to_response(negotiation: Negotiation) -> NegotiationResponse:
    d = negotiation.data
    return NegotiationResponse(
        id=negotiation.id,
        product_id=d.product_id,
        buyer_id=d.buyer_id,
        seller_id=d.seller_id,
        buyer_offer=d.buyer_offer,
        seller_counter_offer=d.seller_counter_offer,
        buyer_message=d.buyer_message,
        seller_message=d.seller_message,
        status=d.status,
        expires_at=d.expires_at,
        created_at=d.created_at,
        closed_at=d.closed_at,
        settlement=d.settlement,
    )


@router.post("/", response_model=NegotiationResponse, status_code=201)
async def route_negotiation_create(body: CreateNegotiationRequest, user_id: str = Depends(current_user_id)):
    try:
        negotiation = await negotiation_create(body.product_id, user_id, body.offer, body.message)
    except EngineError as e:
        raise engine_error_to_http(e)
    return _negotiation_to_response(negotiation)


@router.get("/", response_model=List[NegotiationResponse])
async def route_negotiations_mine(
    role: Optional[Literal["buyer", "seller"]] = None,
    user_id: str = Depends(current_user_id),
):
    negotiations = await negotiation_get_by_user(user_id, role)
    return [_negotiation_to_response(n) for n in negotiations]


@router.get("/{negotiation_id}", response_model=NegotiationResponse)
async def route_negotiation_detail(negotiation_id: str, user_id: str = Depends(current_user_id)):
    try:
        negotiation = await negotiation_get(negotiation_id, user_id)
    except EngineError as e:
        raise engine_error_to_http(e)
    return _negotiation_to_response(negotiation)


@router.post("/{negotiation_id}/counter", response_model=NegotiationResponse)
async def route_negotiation_counter(
    negotiation_id: str,
    body: CounterOfferRequest,
    user_id: str = Depends(current_user_id),
):
    try:
        negotiation = await negotiation_counter(negotiation_id, user_id, body.counter_offer, body.message)
    except EngineError as e:
        raise engine_error_to_http(e)
    return _negotiation_to_response(negotiation)


@router.post("/{negotiation_id}/accept", response_model=NegotiationResponse)
async def route_negotiation_accept(negotiation_id: str, user_id: str = Depends(current_user_id)):
    """Accept the counter-offer; the item is reserved in the buyer's cart."""
    try:
        negotiation = await negotiation_accept(negotiation_id, user_id)
    except EngineError as e:
        raise engine_error_to_http(e)
    return _negotiation_to_response(negotiation)


@router.post("/{negotiation_id}/decline", response_model=NegotiationResponse)
async def route_negotiation_decline(negotiation_id: str, user_id: str = Depends(current_user_id)):
    try:
        negotiation = await negotiation_decline(negotiation_id, user_id)
    except EngineError as e:
        raise engine_error_to_http(e)
    return _negotiation_to_response(negotiation)


@router.post("/{negotiation_id}/cancel", response_model=NegotiationResponse)
async def route_negotiation_cancel(negotiation_id: str, user_id: str = Depends(current_user_id)):
    try:
        negotiation = await negotiation_cancel(negotiation_id, user_id)
    except EngineError as e:
        raise engine_error_to_http(e)
    return _negotiation_to_response(negotiation)
