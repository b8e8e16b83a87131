"""
Redis Document Store - Persistence Layer

Stores each document as a JSON string under
``{prefix}:{collection}:{unique value}``. A collection's unique index
(declared with create_index(unique=True)) decides the key; TTL indexes
become EXPIREAT on the document key.

Lookups by the unique field are a single GET; any other filter scans the
collection's keys.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from src.config import Settings
from src.errors import DuplicateKey, StoreUnavailable
from src.storage.document_store import (
    Filter,
    IndexSpec,
    Sort,
    apply_update,
    as_datetime,
    matches,
    sort_documents,
)

logger = logging.getLogger(__name__)


class RedisDocumentStore:
    """Redis-backed DocumentStore"""

    def __init__(self, settings: Settings, prefix: str = "medchat"):
        self.url = settings.redis_url
        self.password = settings.redis_password
        self.prefix = prefix
        self.client: Optional[Redis] = None
        self._indexes: Dict[str, Dict[str, IndexSpec]] = {}

    async def connect(self):
        """Connect to Redis"""
        try:
            self.client = redis.from_url(
                self.url,
                password=self.password,
                decode_responses=True,
            )
            await self.client.ping()
        except (RedisError, OSError) as e:
            logger.warning("Redis connection failed (%s); store unavailable", e)
            self.client = None

    async def disconnect(self):
        """Disconnect from Redis"""
        if self.client:
            await self.client.aclose()

    def _require_client(self, operation: str) -> Redis:
        if not self.client:
            raise StoreUnavailable("Redis is not connected", operation=operation)
        return self.client

    def _unique_field(self, collection: str) -> str:
        for spec in self._indexes.get(collection, {}).values():
            if spec.unique:
                return spec.field
        raise ValueError(f"Collection {collection!r} has no unique index")

    def _key(self, collection: str, value: Any) -> str:
        return f"{self.prefix}:{collection}:{value}"

    async def _load(self, client: Redis, key: str) -> Optional[Dict[str, Any]]:
        raw = await client.get(key)
        return json.loads(raw) if raw else None

    async def _candidates(self, client: Redis, collection: str, filter: Filter) -> List[tuple[str, Dict[str, Any]]]:
        """(key, document) pairs that match filter"""
        field = self._unique_field(collection)
        if field in filter:
            key = self._key(collection, filter[field])
            doc = await self._load(client, key)
            return [(key, doc)] if doc is not None and matches(doc, filter) else []

        found = []
        async for key in client.scan_iter(match=f"{self.prefix}:{collection}:*"):
            doc = await self._load(client, key)
            if doc is not None and matches(doc, filter):
                found.append((key, doc))
        return found

    def _deadlines(self, collection: str, document: Dict[str, Any]) -> List[datetime]:
        """Expiry times from the collection's TTL indexes"""
        deadlines = []
        for spec in self._indexes.get(collection, {}).values():
            if spec.ttl_seconds is None:
                continue
            anchor = as_datetime(document.get(spec.field))
            if anchor is not None:
                deadlines.append(anchor + timedelta(seconds=spec.ttl_seconds))
        return deadlines

    async def find_one(self, collection: str, filter: Filter) -> Optional[Dict[str, Any]]:
        client = self._require_client("find_one")
        try:
            found = await self._candidates(client, collection, filter)
        except (RedisError, OSError) as e:
            raise StoreUnavailable(str(e), operation="find_one") from e
        return found[0][1] if found else None

    async def find(
        self,
        collection: str,
        filter: Filter,
        sort: Optional[Sort] = None,
    ) -> List[Dict[str, Any]]:
        client = self._require_client("find")
        try:
            found = await self._candidates(client, collection, filter)
        except (RedisError, OSError) as e:
            raise StoreUnavailable(str(e), operation="find") from e
        return sort_documents([doc for _, doc in found], sort)

    async def insert_one(self, collection: str, document: Dict[str, Any]) -> None:
        client = self._require_client("insert_one")
        key = self._key(collection, document[self._unique_field(collection)])
        try:
            created = await client.set(key, json.dumps(document), nx=True)
            if not created:
                raise DuplicateKey(f"Duplicate key {key}")
            for deadline in self._deadlines(collection, document):
                await client.expireat(key, deadline)
        except (RedisError, OSError) as e:
            raise StoreUnavailable(str(e), operation="insert_one") from e

    async def update_one(
        self,
        collection: str,
        filter: Filter,
        set: Optional[Dict[str, Any]] = None,
        push_each: Optional[Dict[str, List[Any]]] = None,
        inc: Optional[Dict[str, int]] = None,
    ) -> bool:
        """
        Read-modify-write one document under WATCH

        The write is queued in MULTI/EXEC; if another writer touches the
        key in between, redis-py retries the whole read and apply.
        """
        client = self._require_client("update_one")
        try:
            found = await self._candidates(client, collection, filter)
            if not found:
                return False
            key = found[0][0]

            async def apply(pipe) -> bool:
                raw = await pipe.get(key)
                pipe.multi()
                doc = json.loads(raw) if raw else None
                if doc is None or not matches(doc, filter):
                    return False
                apply_update(doc, set=set, push_each=push_each, inc=inc)
                pipe.set(key, json.dumps(doc), keepttl=True)
                for deadline in self._deadlines(collection, doc):
                    pipe.expireat(key, deadline)
                return True

            return await client.transaction(apply, key, value_from_callable=True)
        except (RedisError, OSError) as e:
            raise StoreUnavailable(str(e), operation="update_one") from e

    async def delete_one(self, collection: str, filter: Filter) -> bool:
        client = self._require_client("delete_one")
        try:
            found = await self._candidates(client, collection, filter)
            if not found:
                return False
            await client.delete(found[0][0])
            return True
        except (RedisError, OSError) as e:
            raise StoreUnavailable(str(e), operation="delete_one") from e

    async def delete_many(self, collection: str, filter: Filter) -> int:
        client = self._require_client("delete_many")
        try:
            found = await self._candidates(client, collection, filter)
            if not found:
                return 0
            return await client.delete(*[key for key, _ in found])
        except (RedisError, OSError) as e:
            raise StoreUnavailable(str(e), operation="delete_many") from e

    async def create_index(
        self,
        collection: str,
        field: str,
        unique: bool = False,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        # Index declarations are local; they shape keys and expiry
        self._indexes.setdefault(collection, {})[field] = IndexSpec(field, unique, ttl_seconds)

    async def ping(self) -> bool:
        """Check Redis connection health"""
        if not self.client:
            return False
        try:
            await self.client.ping()
            return True
        except (RedisError, OSError):
            return False
