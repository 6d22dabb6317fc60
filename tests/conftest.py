"""
Shared fixtures for eagerload tests.
"""

import asyncio
import time
from typing import Any, Dict, Hashable, List, Optional

import pytest

from eagerload.config import EngineSettings


class RecordingFetcher:
    """Fetcher stub recording every call; returns outcomes in reverse key order."""

    def __init__(self,
                 data: Optional[Dict[Hashable, Any]] = None,
                 delay: float = 0.0,
                 failures: Optional[List[BaseException]] = None):
        self.data = data if data is not None else {}
        self.delay = delay
        self.failures = list(failures or [])
        self.calls: List[List[Hashable]] = []
        self.spans: List[tuple] = []
        self.started = asyncio.Event()

    async def __call__(self, entity_type: str, keys: List[Hashable]):
        start = time.monotonic()
        self.calls.append(list(keys))
        self.started.set()
        if self.delay:
            await asyncio.sleep(self.delay)
        try:
            if self.failures:
                raise self.failures.pop(0)
            return {key: self.data[key] for key in reversed(keys) if key in self.data}
        finally:
            self.spans.append((start, time.monotonic()))

    @property
    def requested_keys(self) -> List[Hashable]:
        return [key for call in self.calls for key in call]


def make_users(*ids: int) -> Dict[int, Dict[str, Any]]:
    return {i: {"id": i, "name": f"user-{i}"} for i in ids}


@pytest.fixture
def users():
    """User rows keyed by id."""
    return make_users(1, 2, 3, 4, 5)


@pytest.fixture
def user_fetcher(users):
    return RecordingFetcher(users)


@pytest.fixture
def fast_settings():
    """Settings with millisecond backoff so retry tests stay quick."""
    return EngineSettings(
        max_batch_size=100,
        max_concurrent_fetches=10,
        retry={"max_attempts": 3, "base_delay_ms": 1, "max_delay_ms": 5, "jitter": False},
    )


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()

