"""
Ports to the services the engine does not own: product catalogue, cart,
notification centre and the event bus.

The engine only talks to these through the process-wide ``Collaborators``
registry, so how products or carts are persisted is never its concern.
``main`` wires the HTTP adapters from ``clients.marketplace``; tests wire
in-memory fakes.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Literal, Optional, Protocol, Union

from pydantic import BaseModel


class ProductSnapshot(BaseModel):
    """The subset of a product listing the engine reads."""
    id: str
    seller_id: str
    title: str = ""
    status: str = "ACTIVE"
    listing_type: str = "FIXED"
    base_price: float = 0.0
    currency: str = "USD"
    min_order_quantity: float = 1
    expires_at: Optional[datetime] = None


class Provenance(BaseModel):
    """Back-reference attached to a cart reservation."""
    source: Literal["auction", "negotiation"]
    source_id: str
    idempotency_key: str


class ProductPort(Protocol):
    async def get_product(self, product_id: str) -> Optional[Union[ProductSnapshot, Dict[str, Any]]]: ...

    async def set_product_status(self, product_id: str, status: str) -> None: ...


class CartPort(Protocol):
    async def reserve(
        self,
        beneficiary_id: str,
        product_id: str,
        quantity: float,
        price: float,
        provenance: Dict[str, Any],
    ) -> str: ...


class NotificationPort(Protocol):
    async def notify(self, user_id: str, title: str, message: str, data: Dict[str, Any]) -> None: ...


class EventBusPort(Protocol):
    async def publish(self, topic: str, payload: Dict[str, Any]) -> Any: ...


@dataclass
class Collaborators:
    products: ProductPort
    carts: CartPort
    notifications: NotificationPort
    events: EventBusPort


_collaborators: Optional[Collaborators] = None


def collaborators_init(collaborators: Collaborators) -> Collaborators:
    global _collaborators
    _collaborators = collaborators
    return _collaborators


def collaborators_get() -> Collaborators:
    if _collaborators is None:
        raise RuntimeError("Collaborators not initialised; call collaborators_init() at startup")
    return _collaborators


def collaborators_reset() -> None:
    global _collaborators
    _collaborators = None


async def product_get(product_id: str) -> Optional[ProductSnapshot]:
    raw = await collaborators_get().products.get_product(product_id)
    if raw is None or isinstance(raw, ProductSnapshot):
        return raw
    return ProductSnapshot.model_validate(raw)
