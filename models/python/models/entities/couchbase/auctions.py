from typing import List, Literal, Optional
from datetime import datetime
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData

from models.entities.couchbase.bids import Bid
from models.entities.couchbase.settlements import Settlement

AuctionStatus = Literal["SCHEDULED", "ACTIVE", "ENDED", "CANCELLED"]


class AuctionData(BaseCouchbaseEntityData):
    # Ownership (seller denormalized from the product at creation)
    product_id: str
    seller_id: str

    auction_type: Literal["ENGLISH"] = "ENGLISH"
    starting_price: float
    reserve_price: Optional[float] = None
    bid_increment: float
    quantity: float = 1

    # Schedule
    start_time: datetime
    end_time: datetime

    status: AuctionStatus = "SCHEDULED"

    # Bid frontier, only ever changed inside a CAS-guarded write
    current_bid: float
    bid_count: int = 0
    bids: List[Bid] = []

    # Outcome
    winner_id: Optional[str] = None
    winning_bid_id: Optional[str] = None
    winning_price: Optional[float] = None
    ended_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    restart_count: int = 0
    ending_soon_notified: bool = False

    settlement: Optional[Settlement] = None


class Auction(BaseModelCouchbase[AuctionData]):
    _collection_name = "auctions"
