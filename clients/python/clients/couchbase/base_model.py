import uuid
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel
from couchbase.exceptions import DocumentNotFoundException

from .keyspace import Keyspace, get_keyspace


class BaseCouchbaseEntityData(BaseModel):
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by_user_id: Optional[str] = None


DataT = TypeVar("DataT", bound=BaseCouchbaseEntityData)
T = TypeVar("T", bound="BaseModelCouchbase")


class BaseModelCouchbase(BaseModel, Generic[DataT]):
    """A Couchbase document: key, pydantic payload and the CAS it was read with.

    ``update`` replaces with the stored CAS, so a document that changed since
    it was read raises ``CASMismatchException`` instead of being overwritten.
    """

    id: str
    data: DataT
    cas: Optional[int] = None

    _collection_name: ClassVar[str] = ""

    @staticmethod
    def to_document(data: DataT) -> dict:
        return data.model_dump(mode='json')

    @classmethod
    def get_keyspace(cls) -> Keyspace:
        if not cls._collection_name:
            raise ValueError(f"_collection_name not set for {cls.__name__}")
        return get_keyspace(cls._collection_name)

    @classmethod
    def from_row(cls: type[T], row: Dict[str, Any]) -> Optional[T]:
        """Build an entity from a ``SELECT META().id, *`` row."""
        data = row.get(cls._collection_name)
        if not data:
            return None
        return cls(id=row["id"], data=data)

    @classmethod
    async def get(cls: type[T], id: str) -> Optional[T]:
        try:
            collection = await cls.get_keyspace().get_collection()
            result = await collection.get(id)
            data = result.content_as[dict]
            return cls(id=id, data=data, cas=result.cas)
        except DocumentNotFoundException:
            return None

    @classmethod
    async def create(cls: type[T], data: DataT, key: Optional[str] = None, user_id: Optional[str] = None) -> T:
        """Insert a new document. A taken *key* raises ``DocumentExistsException``."""
        if key is None:
            key = str(uuid.uuid4())

        now = datetime.now(timezone.utc)
        if data.created_at is None:
            data.created_at = now
        data.updated_at = now

        if user_id:
            data.created_by_user_id = user_id

        result = await cls.get_keyspace().insert(cls.to_document(data), key=key)
        return cls(id=key, data=data, cas=result.cas)

    @classmethod
    async def update(cls: type[T], item: T) -> T:
        item.data.updated_at = datetime.now(timezone.utc)
        result = await cls.get_keyspace().replace(item.id, cls.to_document(item.data), cas=item.cas)
        item.cas = result.cas
        return item

    @classmethod
    async def delete(cls: type[T], id: str, cas: Optional[int] = None) -> bool:
        try:
            await cls.get_keyspace().remove(id, cas=cas)
            return True
        except DocumentNotFoundException:
            return False

    @classmethod
    async def find(cls: type[T], where: str, order_by: Optional[str] = None, limit: Optional[int] = None, offset: int = 0, **params) -> List[T]:
        """Select documents of this collection matching a N1QL *where* clause."""
        keyspace = cls.get_keyspace()
        query = f"SELECT META().id, * FROM {keyspace} WHERE {where}"
        if order_by:
            query += f" ORDER BY {order_by}"
        if limit is not None:
            query += f" LIMIT {int(limit)} OFFSET {int(offset)}"
        rows = await keyspace.query(query, **params)
        items = []
        for row in rows:
            item = cls.from_row(row)
            if item is not None:
                items.append(item)
        return items
