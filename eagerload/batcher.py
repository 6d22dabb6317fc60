"""
Key batching state for one engine scope.

Per entity type there is at most one OPEN batch collecting keys. When its flush
fires the batch is detached (FLUSHING) and the next ``load`` for that entity
type opens a fresh one, so keys requested while a fetch is in flight are never
mixed into it. Keys of FLUSHING batches stay indexed until the fetch settles so
that a repeated ``load`` of an in-flight key joins it instead of fetching again.

Loads issued from inside a fetcher that holds a limiter slot collect in a
separate open batch that borrows the slot, and never join a batch that is
still queued for a slot.
"""

import asyncio
import contextvars
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Hashable, List, Optional, Tuple


class BatchState(str, Enum):
    OPEN = "open"
    FLUSHING = "flushing"
    SETTLED = "settled"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class LoadKey:
    """Identity of one lookup."""

    entity_type: str
    key: Hashable


@dataclass(eq=False)
class PendingRequest:
    """One ``load`` call waiting on a key."""

    key: Hashable
    future: asyncio.Future


@dataclass(eq=False)
class Batch:
    """Unique keys of one entity type and the waiters on each of them."""

    entity_type: str
    keys: List[Hashable] = field(default_factory=list)
    waiters: Dict[Hashable, List[PendingRequest]] = field(default_factory=dict)
    state: BatchState = BatchState.OPEN
    handle: Optional[asyncio.Handle] = None
    task: Optional["asyncio.Task"] = None
    attempts: int = 0
    # Opened from inside a held limiter slot; the flush borrows that slot
    borrows_slot: bool = False
    # Set once the flush holds (or borrowed) its limiter slot
    started: bool = False
    context: Optional[contextvars.Context] = None

    def __len__(self) -> int:
        return len(self.keys)

    def __contains__(self, key: Hashable) -> bool:
        return key in self.waiters

    def add(self, request: PendingRequest) -> bool:
        """Register a waiter; returns True when its key is new to the batch."""
        waiting = self.waiters.get(request.key)
        if waiting is not None:
            waiting.append(request)
            return False
        self.keys.append(request.key)
        self.waiters[request.key] = [request]
        return True

    def pending(self) -> List[PendingRequest]:
        return [request for requests in self.waiters.values() for request in requests]

    @property
    def cancelled(self) -> bool:
        return self.state is BatchState.CANCELLED

    def joinable(self, holds_slot: bool) -> bool:
        """Whether a caller can wait on this batch without deadlocking.

        A caller holding a limiter slot must not wait on a batch that is still
        queued for a slot of its own, since that slot may be the caller's.
        """
        return not holds_slot or self.borrows_slot or self.started


class KeyBatcher:
    """Tracks open and in-flight batches for one scope."""

    def __init__(self):
        self._open: Dict[Tuple[str, bool], Batch] = {}
        self._in_flight: Dict[LoadKey, Batch] = {}
        self._flushing: List[Batch] = []

    def open_batch(self, entity_type: str, borrows_slot: bool = False) -> Tuple[Batch, bool]:
        """Return the open batch for ``entity_type``, creating it if needed."""
        lane = (entity_type, borrows_slot)
        batch = self._open.get(lane)
        if batch is not None:
            return batch, False
        batch = Batch(entity_type=entity_type, borrows_slot=borrows_slot)
        self._open[lane] = batch
        return batch, True

    def find_waiting(self, entity_type: str, key: Hashable, holds_slot: bool = False) -> Optional[Batch]:
        """Batch (open or in flight) the caller can wait on for ``key``, if any."""
        for borrows_slot in (holds_slot, not holds_slot):
            batch = self._open.get((entity_type, borrows_slot))
            if batch is not None and key in batch and batch.joinable(holds_slot):
                return batch
        batch = self._in_flight.get(LoadKey(entity_type, key))
        if batch is not None and batch.joinable(holds_slot):
            return batch
        return None

    def detach(self, batch: Batch) -> None:
        """OPEN -> FLUSHING: close the batch to new keys and index its keys."""
        lane = (batch.entity_type, batch.borrows_slot)
        if self._open.get(lane) is batch:
            del self._open[lane]
        batch.state = BatchState.FLUSHING
        for key in batch.keys:
            self._in_flight[LoadKey(batch.entity_type, key)] = batch
        self._flushing.append(batch)

    def complete(self, batch: Batch) -> None:
        """FLUSHING -> SETTLED (unless cancelled): drop the in-flight index."""
        for key in batch.keys:
            load_key = LoadKey(batch.entity_type, key)
            if self._in_flight.get(load_key) is batch:
                del self._in_flight[load_key]
        if batch in self._flushing:
            self._flushing.remove(batch)
        if batch.state is BatchState.FLUSHING:
            batch.state = BatchState.SETTLED

    def drain(self) -> List[Batch]:
        """Remove and return every open and in-flight batch."""
        batches = list(self._open.values()) + list(self._flushing)
        self._open.clear()
        self._in_flight.clear()
        self._flushing.clear()
        return batches

    @property
    def open_count(self) -> int:
        return len(self._open)

    @property
    def in_flight_count(self) -> int:
        return len(self._flushing)
