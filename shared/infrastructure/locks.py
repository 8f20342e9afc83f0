"""
Per-entity lock manager.

Serializes local work on one entity (an order, a product's stock ledger, a
payment) while leaving unrelated entities free to proceed in parallel. There is
no global lock: a suspended operation on order A never blocks order B or a stock
adjustment on any product.

LOCK ORDERING:
Acquire at most one entity lock per scope when possible. When an operation must
hold two (e.g. an order and a product), acquire them through hold_many(), which
sorts the keys so every caller takes them in the same order.
"""

from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Iterable

from shared.config.logging import get_logger

logger = get_logger(__name__)

LockKey = tuple[str, str]


class EntityLockManager:
    """
    Manages asyncio locks keyed by (entity_type, entity_id).

    Includes a cleanup pass that drops unheld locks once the cache grows past
    the threshold, to bound memory on long-running terminals.
    """

    def __init__(self, max_cached_locks: int = 2000, cleanup_threshold: int = 1600):
        self._max_cached_locks = max_cached_locks
        self._cleanup_threshold = cleanup_threshold
        self._locks: dict[LockKey, asyncio.Lock] = {}
        self._locks_cleaned = 0

    @property
    def lock_count(self) -> int:
        """Number of locks currently cached."""
        return len(self._locks)

    @property
    def locks_cleaned_total(self) -> int:
        """Total number of locks cleaned since startup."""
        return self._locks_cleaned

    def get_lock(self, entity_type: str, entity_id: str) -> asyncio.Lock:
        """
        Get or create the lock for one entity.

        No await happens between lookup and insert, so the dict is never
        observed half-updated by another task.
        """
        key = (entity_type, str(entity_id))
        lock = self._locks.get(key)
        if lock is not None:
            return lock

        if len(self._locks) >= self._cleanup_threshold:
            self._cleanup_unheld_locks()

        lock = asyncio.Lock()
        self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, entity_type: str, entity_id: str) -> AsyncIterator[None]:
        """
        Hold the lock for one entity.

        Usage:
            async with locks.hold("orders", order_id):
                ...
        """
        async with self.get_lock(entity_type, entity_id):
            yield

    @asynccontextmanager
    async def hold_many(self, keys: Iterable[LockKey]) -> AsyncIterator[None]:
        """Hold several entity locks, always acquired in sorted key order."""
        ordered = sorted({(t, str(i)) for t, i in keys})
        async with AsyncExitStack() as stack:
            for entity_type, entity_id in ordered:
                await stack.enter_async_context(self.hold(entity_type, entity_id))
            yield

    def _cleanup_unheld_locks(self) -> None:
        """Drop locks nobody holds or waits on."""
        before = len(self._locks)
        self._locks = {
            key: lock for key, lock in self._locks.items()
            if lock.locked()
        }
        cleaned = before - len(self._locks)
        self._locks_cleaned += cleaned

        if cleaned:
            logger.debug("Cleaned unheld entity locks", cleaned=cleaned, remaining=len(self._locks))
        if len(self._locks) >= self._max_cached_locks:
            logger.warning(
                "Entity lock cache above limit with all locks held",
                count=len(self._locks),
                limit=self._max_cached_locks,
            )
