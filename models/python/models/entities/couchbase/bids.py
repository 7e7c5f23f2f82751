from typing import Literal
from datetime import datetime
from pydantic import BaseModel

BidStatus = Literal["WINNING", "OUTBID", "WON", "LOST"]


class Bid(BaseModel):
    """A bid, stored inside its auction document.

    Keeping bids in the auction document means one CAS-guarded replace
    orders concurrent bids and moves the WINNING flag in the same write.
    """
    id: str
    auction_id: str
    bidder_id: str
    amount: float
    status: BidStatus = "WINNING"
    placed_at: datetime
