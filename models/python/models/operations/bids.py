"""
Bid query operations.

Bids are embedded in their auction document; the placement logic lives in
operations/auctions.py.
"""

from typing import List

from models.entities.couchbase.auctions import Auction
from models.entities.couchbase.bids import Bid
from models.errors import NotFound


async def bid_get_by_auction(auction_id: str) -> List[Bid]:
    """Bids of an auction, highest amount first, earliest first on ties."""
    auction = await Auction.get(auction_id)
    if not auction:
        raise NotFound(f"Auction {auction_id} not found")
    return sorted(auction.data.bids, key=lambda b: (-b.amount, b.placed_at))


async def bid_get_by_bidder(bidder_id: str, limit: int = 50, offset: int = 0) -> List[Bid]:
    """A bidder's bid history across auctions, most recent first."""
    keyspace = Auction.get_keyspace()
    query = (
        f"SELECT b.* FROM {keyspace} AS a UNNEST a.bids AS b "
        f"WHERE b.bidder_id = $bidder_id "
        f"ORDER BY b.placed_at DESC "
        f"LIMIT {int(limit)} OFFSET {int(offset)}"
    )
    rows = await keyspace.query(query, bidder_id=bidder_id)
    return [Bid.model_validate(row) for row in rows]
