from typing import Literal, Optional
from datetime import datetime
from pydantic import BaseModel

SettlementStatus = Literal["pending", "reserved", "failed"]


class Settlement(BaseModel):
    """Settlement terms and progress, written together with the winning transition."""
    status: SettlementStatus = "pending"
    beneficiary_id: str
    product_id: str
    price: float
    quantity: float
    idempotency_key: str
    reservation_id: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    reserved_at: Optional[datetime] = None
