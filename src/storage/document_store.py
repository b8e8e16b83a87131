"""
Document store interface

The session service only needs a handful of primitives from its storage
engine: find, insert, partial update (set / increment / push), delete and
index declaration. Anything that implements DocumentStore can back the
rate limiter and the chat repository.

MemoryDocumentStore keeps everything in process. It is used for local
development (STORE_BACKEND=memory) and in tests.
"""

import copy
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from src.errors import DuplicateKey
from src.models.conversation import utc_now

Filter = Dict[str, Any]
Sort = List[Tuple[str, int]]


class DocumentStore(Protocol):
    async def find_one(self, collection: str, filter: Filter) -> Optional[Dict[str, Any]]: ...

    async def find(
        self,
        collection: str,
        filter: Filter,
        sort: Optional[Sort] = None,
    ) -> List[Dict[str, Any]]: ...

    async def insert_one(self, collection: str, document: Dict[str, Any]) -> None: ...

    async def update_one(
        self,
        collection: str,
        filter: Filter,
        set: Optional[Dict[str, Any]] = None,
        push_each: Optional[Dict[str, List[Any]]] = None,
        inc: Optional[Dict[str, int]] = None,
    ) -> bool: ...

    async def delete_one(self, collection: str, filter: Filter) -> bool: ...

    async def delete_many(self, collection: str, filter: Filter) -> int: ...

    async def create_index(
        self,
        collection: str,
        field: str,
        unique: bool = False,
        ttl_seconds: Optional[int] = None,
    ) -> None: ...

    async def ping(self) -> bool: ...


@dataclass
class IndexSpec:
    field: str
    unique: bool = False
    ttl_seconds: Optional[int] = None


def matches(document: Dict[str, Any], filter: Filter) -> bool:
    """Equality match on top-level fields"""
    return all(document.get(key) == value for key, value in filter.items())


def as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return None


def apply_update(
    document: Dict[str, Any],
    set: Optional[Dict[str, Any]] = None,
    push_each: Optional[Dict[str, List[Any]]] = None,
    inc: Optional[Dict[str, int]] = None,
) -> None:
    """Apply $set / $inc / $push-$each semantics in place"""
    if set:
        document.update(copy.deepcopy(set))
    if inc:
        for key, amount in inc.items():
            document[key] = document.get(key, 0) + amount
    if push_each:
        for key, values in push_each.items():
            document.setdefault(key, []).extend(copy.deepcopy(values))


def sort_documents(documents: List[Dict[str, Any]], sort: Optional[Sort]) -> List[Dict[str, Any]]:
    if not sort:
        return documents
    # Apply keys last-to-first so the first key wins
    for field, direction in reversed(sort):
        documents.sort(key=lambda doc: (doc.get(field) is None, doc.get(field)), reverse=direction < 0)
    return documents


class MemoryDocumentStore:
    """In-process DocumentStore"""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._collections: Dict[str, List[Dict[str, Any]]] = {}
        self._indexes: Dict[str, Dict[str, IndexSpec]] = {}

    def _documents(self, collection: str) -> List[Dict[str, Any]]:
        documents = self._collections.setdefault(collection, [])
        self._expire(collection, documents)
        return documents

    def _expire(self, collection: str, documents: List[Dict[str, Any]]) -> None:
        now = self._clock()
        for spec in self._indexes.get(collection, {}).values():
            if spec.ttl_seconds is None:
                continue
            ttl = timedelta(seconds=spec.ttl_seconds)
            documents[:] = [
                doc for doc in documents
                if as_datetime(doc.get(spec.field)) is None
                or as_datetime(doc.get(spec.field)) + ttl >= now
            ]

    async def find_one(self, collection: str, filter: Filter) -> Optional[Dict[str, Any]]:
        for doc in self._documents(collection):
            if matches(doc, filter):
                return copy.deepcopy(doc)
        return None

    async def find(
        self,
        collection: str,
        filter: Filter,
        sort: Optional[Sort] = None,
    ) -> List[Dict[str, Any]]:
        found = [copy.deepcopy(doc) for doc in self._documents(collection) if matches(doc, filter)]
        return sort_documents(found, sort)

    async def insert_one(self, collection: str, document: Dict[str, Any]) -> None:
        documents = self._documents(collection)
        for spec in self._indexes.get(collection, {}).values():
            if not spec.unique:
                continue
            value = document.get(spec.field)
            if any(doc.get(spec.field) == value for doc in documents):
                raise DuplicateKey(f"Duplicate {collection}.{spec.field}: {value!r}")
        documents.append(copy.deepcopy(document))

    async def update_one(
        self,
        collection: str,
        filter: Filter,
        set: Optional[Dict[str, Any]] = None,
        push_each: Optional[Dict[str, List[Any]]] = None,
        inc: Optional[Dict[str, int]] = None,
    ) -> bool:
        for doc in self._documents(collection):
            if matches(doc, filter):
                apply_update(doc, set=set, push_each=push_each, inc=inc)
                return True
        return False

    async def delete_one(self, collection: str, filter: Filter) -> bool:
        documents = self._documents(collection)
        for index, doc in enumerate(documents):
            if matches(doc, filter):
                del documents[index]
                return True
        return False

    async def delete_many(self, collection: str, filter: Filter) -> int:
        documents = self._documents(collection)
        kept = [doc for doc in documents if not matches(doc, filter)]
        removed = len(documents) - len(kept)
        documents[:] = kept
        return removed

    async def create_index(
        self,
        collection: str,
        field: str,
        unique: bool = False,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        self._indexes.setdefault(collection, {})[field] = IndexSpec(field, unique, ttl_seconds)

    async def ping(self) -> bool:
        return True
