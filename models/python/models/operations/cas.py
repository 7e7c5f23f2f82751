"""
CAS-guarded read-modify-write shared by the auction and negotiation operations.

Every mutation re-reads the document, applies a mutator to the fresh copy
and replaces it with the CAS that was read. A concurrent writer turns the
replace into ``CASMismatchException``; the helper then re-reads and retries
with exponential backoff (10 ms, 20 ms, 40 ms, …) so the mutator always
validates against current state, never a cached copy.
"""

import asyncio
import logging
from typing import Callable, Optional, TypeVar

from couchbase.exceptions import CASMismatchException

from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData
from models.errors import Conflict, NotFound

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=BaseModelCouchbase)

DEFAULT_MAX_RETRIES = 5


class NoChange(Exception):
    """Raised by a mutator when the fresh document needs no write."""


async def cas_retry(
    entity_cls: type[E],
    doc_id: str,
    mutator: Callable[[BaseCouchbaseEntityData], None],
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> Optional[E]:
    """Apply *mutator* to a fresh read of *doc_id* until the replace sticks.

    *mutator* mutates the data in place, raises an ``EngineError`` to abort,
    or raises ``NoChange`` to skip the write (the helper then returns None).
    Returns the updated entity. Raises ``Conflict`` once retries run out.
    """
    backoff_ms = 10
    for attempt in range(max_retries + 1):
        entity = await entity_cls.get(doc_id)
        if not entity:
            raise NotFound(f"{entity_cls.__name__} {doc_id} not found")

        try:
            mutator(entity.data)
        except NoChange:
            return None

        try:
            return await entity_cls.update(entity)
        except CASMismatchException:
            if attempt == max_retries:
                break
            logger.debug(f"CAS mismatch on {entity_cls.__name__} {doc_id}, retry {attempt + 1}")
            await asyncio.sleep(backoff_ms / 1000)
            backoff_ms *= 2

    raise Conflict(f"Concurrent update conflict on {entity_cls.__name__} {doc_id}, please retry")
