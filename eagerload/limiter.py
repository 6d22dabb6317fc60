"""
Concurrency limiter bounding simultaneous fetcher invocations.
"""

import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import AsyncIterator, Dict, Optional, Tuple

from .logging import get_logger

# Limiters whose slot is held by the current task (or the task that spawned it)
_held_slots: ContextVar[Tuple[int, ...]] = ContextVar("eagerload_held_slots", default=())


class ConcurrencyLimiter:
    """Counting limiter with a global bound and optional per-entity-type bounds.

    A flush that starts while an ancestor task already holds a slot of this
    limiter (a fetcher issuing nested loads for another entity type) borrows
    that slot instead of acquiring a new one. The ancestor is suspended on the
    nested load, so the borrowed slot is not used concurrently and the nested
    flush cannot deadlock waiting for a slot its own parent holds.
    """

    def __init__(self, max_concurrent: int = 10, per_type: Optional[Dict[str, int]] = None):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.per_type_limits = dict(per_type or {})
        self._global = asyncio.Semaphore(max_concurrent)
        self._per_type: Dict[str, asyncio.Semaphore] = {
            entity_type: asyncio.Semaphore(limit)
            for entity_type, limit in self.per_type_limits.items()
        }
        self._active = 0
        self._borrowed = 0
        self.logger = get_logger("eagerload.limiter")

    @property
    def active(self) -> int:
        """Slots currently held (borrowed slots excluded)."""
        return self._active

    def holds_slot(self) -> bool:
        """True when the current context already holds a slot of this limiter."""
        return id(self) in _held_slots.get()

    async def acquire(self, entity_type: str) -> None:
        """Wait for a per-type slot (if bounded) and then a global slot."""
        type_semaphore = self._per_type.get(entity_type)
        if type_semaphore is not None:
            await type_semaphore.acquire()
        try:
            await self._global.acquire()
        except BaseException:
            if type_semaphore is not None:
                type_semaphore.release()
            raise
        self._active += 1

    def release(self, entity_type: str) -> None:
        self._active -= 1
        self._global.release()
        type_semaphore = self._per_type.get(entity_type)
        if type_semaphore is not None:
            type_semaphore.release()

    @asynccontextmanager
    async def slot(self, entity_type: str) -> AsyncIterator[bool]:
        """Hold a slot for the body; yields True when the slot was borrowed."""
        if self.holds_slot():
            self._borrowed += 1
            self.logger.debug("Borrowing parent fetch slot", entity_type=entity_type)
            try:
                yield True
            finally:
                self._borrowed -= 1
            return

        await self.acquire(entity_type)
        token = _held_slots.set(_held_slots.get() + (id(self),))
        try:
            yield False
        finally:
            _held_slots.reset(token)
            self.release(entity_type)
