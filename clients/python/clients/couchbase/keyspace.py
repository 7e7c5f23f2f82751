import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from couchbase.result import MutationResult
from couchbase.options import QueryOptions, InsertOptions
from couchbase.n1ql import QueryScanConsistency

from .config import get_cluster, DEFAULT_BUCKET_NAME


@dataclass
class Keyspace:
    bucket_name: str
    scope_name: str
    collection_name: str

    def __str__(self) -> str:
        return f"`{self.bucket_name}`.`{self.scope_name}`.`{self.collection_name}`"

    async def query(self, query: str, consistent: bool = True, **kwargs) -> list:
        """Run a N1QL query with named parameters.

        Sweeps read with REQUEST_PLUS so a document written just before the
        query is visible to it.
        """
        cluster = await get_cluster()
        query = query.replace("${keyspace}", str(self))
        options = QueryOptions(named_parameters=kwargs)
        if consistent:
            options = QueryOptions(
                named_parameters=kwargs,
                scan_consistency=QueryScanConsistency.REQUEST_PLUS,
            )
        result = cluster.query(query, options)
        return [row async for row in result]

    async def get_scope(self):
        cluster = await get_cluster()
        bucket = cluster.bucket(self.bucket_name)
        return bucket.scope(self.scope_name)

    async def get_collection(self):
        scope = await self.get_scope()
        return scope.collection(self.collection_name)

    async def insert(
        self,
        value: dict,
        key: Optional[str] = None,
        expiry: Optional[timedelta] = None,
    ) -> MutationResult:
        """Insert a new document. Raises DocumentExistsException if *key* is taken."""
        if key is None:
            key = str(uuid.uuid4())
        collection = await self.get_collection()
        if expiry is not None:
            return await collection.insert(key, value, InsertOptions(expiry=expiry))
        return await collection.insert(key, value)

    async def upsert(self, key: str, value: dict) -> MutationResult:
        collection = await self.get_collection()
        return await collection.upsert(key, value)

    async def replace(self, key: str, value: dict, cas: Optional[int] = None) -> MutationResult:
        """Replace a document; with *cas* the write fails on a concurrent change."""
        collection = await self.get_collection()
        if cas:
            return await collection.replace(key, value, cas=cas)
        return await collection.replace(key, value)

    async def remove(self, key: str, cas: Optional[int] = None) -> int:
        """Remove a document; with *cas* the remove fails on a concurrent change."""
        collection = await self.get_collection()
        if cas:
            result = await collection.remove(key, cas=cas)
        else:
            result = await collection.remove(key)
        return result.cas


def get_keyspace(collection_name: str, scope_name: Optional[str] = "_default", bucket_name: Optional[str] = DEFAULT_BUCKET_NAME) -> Keyspace:
    return Keyspace(bucket_name, scope_name, collection_name)
