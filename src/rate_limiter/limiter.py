"""Fixed-window rate limiting"""

import asyncio
import logging
import math
import weakref
from datetime import datetime, timedelta
from typing import Callable

from src.errors import DuplicateKey, RateLimited, StoreUnavailable
from src.models.conversation import utc_now
from src.models.rate_limit import RateLimitDecision, RateLimitInfo, RateLimitRecord
from src.storage.document_store import DocumentStore

logger = logging.getLogger(__name__)


class FixedWindowRateLimiter:
    """
    Per-client request counter that resets at fixed window boundaries

    The window for a client starts with its first admitted request and
    lasts window_seconds. Counters live in the document store so several
    gateway processes share them; the read-modify-write for one client is
    serialised in-process by a per-client lock.

    If the store cannot be reached the request is admitted and the
    condition is logged.
    """

    def __init__(
        self,
        store: DocumentStore,
        limit: int = 60,
        window_seconds: int = 60,
        collection: str = "rateLimits",
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.limit = limit
        self.window = timedelta(seconds=window_seconds)
        self.collection = collection
        self._clock = clock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    async def setup(self):
        """Declare indexes (unique client id, TTL one window past start)"""
        try:
            await self.store.create_index(self.collection, "clientId", unique=True)
            await self.store.create_index(
                self.collection,
                "windowStart",
                ttl_seconds=int(self.window.total_seconds()),
            )
        except StoreUnavailable as e:
            logger.warning("Could not create rate limit indexes on %s: %s", self.collection, e)

    def _lock_for(self, client_id: str) -> asyncio.Lock:
        lock = self._locks.get(client_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[client_id] = lock
        return lock

    def _retry_after(self, window_start: datetime, now: datetime) -> int:
        remaining = (window_start + self.window - now).total_seconds()
        return max(0, math.ceil(remaining))

    async def admit(self, client_id: str) -> RateLimitDecision:
        """Count one request for client_id and decide whether it may proceed"""
        now = self._clock()
        try:
            async with self._lock_for(client_id):
                try:
                    return await self._admit(client_id, now)
                except DuplicateKey:
                    # Another process created the record first
                    return await self._admit(client_id, now)
        except StoreUnavailable as e:
            logger.warning(
                "Rate limit store unavailable; admitting %s in degraded mode: %s",
                client_id,
                e,
            )
            return RateLimitDecision(
                allowed=True,
                limit=self.limit,
                remaining=self.limit,
                degraded=True,
            )

    async def _admit(self, client_id: str, now: datetime) -> RateLimitDecision:
        doc = await self.store.find_one(self.collection, {"clientId": client_id})

        if doc is None:
            record = RateLimitRecord(
                client_id=client_id,
                request_count=1,
                window_start=now,
                updated_at=now,
            )
            await self.store.insert_one(self.collection, record.to_document())
            return self._allowed(record)

        record = RateLimitRecord.model_validate(doc)

        if now - record.window_start > self.window:
            record.request_count = 1
            record.window_start = now
            record.updated_at = now
            await self.store.update_one(
                self.collection,
                {"clientId": client_id},
                set={
                    "requestCount": 1,
                    "windowStart": record.to_document()["windowStart"],
                    "updatedAt": record.to_document()["updatedAt"],
                },
            )
            return self._allowed(record)

        if record.request_count >= self.limit:
            retry_after = self._retry_after(record.window_start, now)
            logger.info("Rate limit exceeded for %s, retry after %ss", client_id, retry_after)
            return RateLimitDecision(
                allowed=False,
                limit=self.limit,
                remaining=0,
                reset_at=record.window_start + self.window,
                retry_after_seconds=retry_after,
            )

        record.request_count += 1
        record.updated_at = now
        await self.store.update_one(
            self.collection,
            {"clientId": client_id},
            set={"updatedAt": record.to_document()["updatedAt"]},
            inc={"requestCount": 1},
        )
        return self._allowed(record)

    def _allowed(self, record: RateLimitRecord) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=True,
            limit=self.limit,
            remaining=max(0, self.limit - record.request_count),
            reset_at=record.window_start + self.window,
        )

    async def check(self, client_id: str) -> RateLimitDecision:
        """Like admit, but raises RateLimited on denial"""
        decision = await self.admit(client_id)
        if not decision.allowed:
            raise RateLimited(decision.retry_after_seconds or 0, limit=self.limit)
        return decision

    async def get_info(self, client_id: str) -> RateLimitInfo:
        """Current window for client_id without counting a request"""
        now = self._clock()
        fresh = RateLimitInfo(
            remaining=self.limit,
            reset=now + self.window,
            limit=self.limit,
            current=0,
        )

        try:
            doc = await self.store.find_one(self.collection, {"clientId": client_id})
        except StoreUnavailable as e:
            logger.warning("Rate limit store unavailable while reading %s: %s", client_id, e)
            return fresh

        if doc is None:
            return fresh

        record = RateLimitRecord.model_validate(doc)
        if now - record.window_start > self.window:
            return fresh

        return RateLimitInfo(
            remaining=max(0, self.limit - record.request_count),
            reset=record.window_start + self.window,
            limit=self.limit,
            current=record.request_count,
        )
