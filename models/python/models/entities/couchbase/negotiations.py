from typing import Literal, Optional
from datetime import datetime
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData

from models.entities.couchbase.settlements import Settlement

NegotiationStatus = Literal["PENDING", "COUNTERED", "ACCEPTED", "DECLINED", "CANCELLED", "EXPIRED"]

OPEN_STATUSES = ("PENDING", "COUNTERED")


class NegotiationData(BaseCouchbaseEntityData):
    product_id: str
    buyer_id: str
    seller_id: str

    buyer_offer: float
    seller_counter_offer: Optional[float] = None
    buyer_message: Optional[str] = None
    seller_message: Optional[str] = None

    status: NegotiationStatus = "PENDING"
    expires_at: Optional[datetime] = None

    countered_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    closed_by: Optional[str] = None

    settlement: Optional[Settlement] = None


class Negotiation(BaseModelCouchbase[NegotiationData]):
    _collection_name = "negotiations"


def negotiation_key(product_id: str, buyer_id: str) -> str:
    """Deterministic document key: one negotiation per (product, buyer)."""
    return f"negotiation::{product_id}::{buyer_id}"
