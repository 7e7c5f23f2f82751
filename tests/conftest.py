"""
Shared fixtures: an in-memory Couchbase double and fake collaborators.

The double keeps a CAS per document and honours insert/replace semantics
(``DocumentExistsException``, ``CASMismatchException``), and yields to the
event loop on every call so concurrent coroutines interleave the way they
would against a real cluster. N1QL finders used by the sweeps are replaced
by scans over the in-memory documents.
"""

import asyncio
import copy
import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from couchbase.exceptions import (
    CASMismatchException,
    DocumentExistsException,
    DocumentNotFoundException,
)

from clients.couchbase import Keyspace
from models.collaborators import (
    Collaborators,
    ProductSnapshot,
    collaborators_init,
    collaborators_reset,
)
from models.entities.couchbase.auctions import Auction
from models.entities.couchbase.negotiations import OPEN_STATUSES, Negotiation
from models.operations import auctions as auction_ops
from models.operations import negotiations as negotiation_ops
from models.operations import settlements as settlement_ops

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Couchbase double
# ---------------------------------------------------------------------------

_cas_counter = itertools.count(1)


class FakeGetResult:
    def __init__(self, content: dict, cas: int):
        self.content_as = {dict: content}
        self.cas = cas


class FakeMutationResult:
    def __init__(self, cas: int):
        self.cas = cas


class FakeCollection:
    def __init__(self, name: str):
        self.name = name
        self.docs: Dict[str, dict] = {}
        self.cas: Dict[str, int] = {}
        self.replace_calls = 0
        self.cas_mismatches = 0

    async def get(self, key: str, *args, **kwargs) -> FakeGetResult:
        await asyncio.sleep(0)
        if key not in self.docs:
            raise DocumentNotFoundException(message=f"{self.name}/{key} not found")
        return FakeGetResult(copy.deepcopy(self.docs[key]), self.cas[key])

    async def insert(self, key: str, value: dict, *args, **kwargs) -> FakeMutationResult:
        await asyncio.sleep(0)
        if key in self.docs:
            raise DocumentExistsException(message=f"{self.name}/{key} exists")
        return self._store(key, value)

    async def upsert(self, key: str, value: dict, *args, **kwargs) -> FakeMutationResult:
        await asyncio.sleep(0)
        return self._store(key, value)

    async def replace(self, key: str, value: dict, *args, cas: Optional[int] = None, **kwargs) -> FakeMutationResult:
        await asyncio.sleep(0)
        self.replace_calls += 1
        if key not in self.docs:
            raise DocumentNotFoundException(message=f"{self.name}/{key} not found")
        if cas is not None and cas != self.cas[key]:
            self.cas_mismatches += 1
            raise CASMismatchException(message=f"{self.name}/{key} changed")
        return self._store(key, value)

    async def remove(self, key: str, *args, cas: Optional[int] = None, **kwargs) -> FakeMutationResult:
        await asyncio.sleep(0)
        if key not in self.docs:
            raise DocumentNotFoundException(message=f"{self.name}/{key} not found")
        if cas is not None and cas != self.cas[key]:
            self.cas_mismatches += 1
            raise CASMismatchException(message=f"{self.name}/{key} changed")
        del self.docs[key]
        return FakeMutationResult(self.cas.pop(key))

    def _store(self, key: str, value: dict) -> FakeMutationResult:
        self.docs[key] = copy.deepcopy(value)
        self.cas[key] = next(_cas_counter)
        return FakeMutationResult(self.cas[key])


class FakeBucket:
    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {}

    def collection(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]

    def entities(self, entity_cls) -> list:
        coll = self.collection(entity_cls._collection_name)
        return [
            entity_cls(id=key, data=copy.deepcopy(doc), cas=coll.cas[key])
            for key, doc in coll.docs.items()
        ]


@pytest.fixture
def bucket(monkeypatch) -> FakeBucket:
    store = FakeBucket()

    async def _get_collection(self: Keyspace):
        return store.collection(self.collection_name)

    monkeypatch.setattr(Keyspace, "get_collection", _get_collection)

    async def _find_due_to_start(now, limit=500):
        return [
            a for a in store.entities(Auction)
            if a.data.status == "SCHEDULED" and a.data.start_time <= now
        ][:limit]

    async def _find_due_to_end(now, limit=500):
        return [
            a for a in store.entities(Auction)
            if a.data.status == "ACTIVE" and a.data.end_time <= now
        ][:limit]

    async def _find_ending_between(window_start, window_end, limit=500):
        return [
            a for a in store.entities(Auction)
            if a.data.status == "ACTIVE"
            and not a.data.ending_soon_notified
            and window_start <= a.data.end_time <= window_end
        ][:limit]

    async def _find_open(after_id="", limit=1000):
        open_ = [
            n for n in store.entities(Negotiation)
            if n.data.status in OPEN_STATUSES and n.id > after_id
        ]
        return sorted(open_, key=lambda n: n.id)[:limit]

    async def _find_unsettled(source, stale_before, max_attempts=10, limit=100):
        entity_cls = Auction if source == "auction" else Negotiation
        found = []
        for entity in store.entities(entity_cls):
            s = entity.data.settlement
            if s is None or s.attempts >= max_attempts:
                continue
            touched = s.last_attempt_at or entity.data.updated_at
            if s.status == "failed" or (s.status == "pending" and touched <= stale_before):
                found.append(entity)
        return found[:limit]

    monkeypatch.setattr(auction_ops, "auction_find_due_to_start", _find_due_to_start)
    monkeypatch.setattr(auction_ops, "auction_find_due_to_end", _find_due_to_end)
    monkeypatch.setattr(auction_ops, "auction_find_ending_between", _find_ending_between)
    monkeypatch.setattr(negotiation_ops, "negotiation_find_open", _find_open)
    monkeypatch.setattr(settlement_ops, "settlement_find_unsettled", _find_unsettled)
    return store


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

class FakeProducts:
    def __init__(self):
        self.products: Dict[str, ProductSnapshot] = {}
        self.status_updates: List[tuple] = []
        self.fail_status_updates = False

    def add(self, product_id: str, seller_id: str, **fields) -> ProductSnapshot:
        product = ProductSnapshot(id=product_id, seller_id=seller_id, title=f"Product {product_id}", **fields)
        self.products[product_id] = product
        return product

    async def get_product(self, product_id: str) -> Optional[ProductSnapshot]:
        await asyncio.sleep(0)
        product = self.products.get(product_id)
        return product.model_copy() if product else None

    async def set_product_status(self, product_id: str, status: str) -> None:
        await asyncio.sleep(0)
        if self.fail_status_updates:
            raise ConnectionError("product service down")
        self.status_updates.append((product_id, status))
        if product_id in self.products:
            self.products[product_id] = self.products[product_id].model_copy(update={"status": status})


class FakeCart:
    """Reserves once per idempotency key, like the real cart service."""

    def __init__(self):
        self.reservations: Dict[str, Dict[str, Any]] = {}
        self.calls = 0
        self.fail = False

    async def reserve(self, beneficiary_id, product_id, quantity, price, provenance) -> str:
        await asyncio.sleep(0)
        self.calls += 1
        if self.fail:
            raise ConnectionError("cart service down")
        key = provenance["idempotency_key"]
        if key not in self.reservations:
            self.reservations[key] = {
                "id": f"res-{len(self.reservations) + 1}",
                "user_id": beneficiary_id,
                "product_id": product_id,
                "quantity": quantity,
                "price": price,
                "provenance": provenance,
            }
        return self.reservations[key]["id"]


class FakeNotifications:
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.fail = False

    async def notify(self, user_id, title, message, data) -> None:
        if self.fail:
            raise ConnectionError("notification service down")
        self.sent.append({"user_id": user_id, "title": title, "message": message, "data": data})

    def titles_for(self, user_id: str) -> List[str]:
        return [n["title"] for n in self.sent if n["user_id"] == user_id]


class FakeEvents:
    def __init__(self):
        self.published: List[tuple] = []

    async def publish(self, topic: str, payload: Dict[str, Any]) -> int:
        self.published.append((topic, payload))
        return 1

    def types(self, topic: Optional[str] = None) -> List[str]:
        return [p["event_type"] for t, p in self.published if topic is None or t == topic]


class FakeCollaborators:
    def __init__(self):
        self.products = FakeProducts()
        self.carts = FakeCart()
        self.notifications = FakeNotifications()
        self.events = FakeEvents()


@pytest.fixture
def fakes(bucket) -> FakeCollaborators:
    fake = FakeCollaborators()
    collaborators_init(
        Collaborators(
            products=fake.products,
            carts=fake.carts,
            notifications=fake.notifications,
            events=fake.events,
        )
    )
    yield fake
    collaborators_reset()


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def auction_product(fakes):
    return fakes.products.add("prod-auction", "seller-1", listing_type="AUCTION", base_price=100)


@pytest.fixture
def negotiable_product(fakes):
    return fakes.products.add(
        "prod-nego",
        "seller-1",
        listing_type="NEGOTIABLE",
        base_price=100,
        min_order_quantity=5,
        expires_at=NOW + timedelta(days=7),
    )
