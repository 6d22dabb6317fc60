"""
Unit tests for the flush pipeline: retries, timeouts, failures, cancellation and hooks.
"""

import asyncio

import pytest

from conftest import RecordingFetcher

from eagerload.batcher import BatchState
from eagerload.cache import ScopedResultCache
from eagerload.config import EngineSettings
from eagerload.engine import Engine
from eagerload.errors import (
    BatchLoadError,
    CancellationError,
    KeyNotFound,
    PermanentFetchError,
    TransientFetchError,
)
from eagerload.retry import RetryError


class DummyMetrics:
    """Minimal observability sink stub."""

    def __init__(self):
        self.events = []

    def record_batch_flushed(self, entity_type, size):
        self.events.append(("flushed", entity_type, size))

    def record_cache_hit(self, entity_type):
        self.events.append(("hit", entity_type))

    def record_cache_miss(self, entity_type):
        self.events.append(("miss", entity_type))

    def record_fetch_latency(self, entity_type, duration, outcome):
        self.events.append(("latency", entity_type, outcome))

    def record_retry(self, entity_type, attempt):
        self.events.append(("retry", entity_type, attempt))

    def record_error(self, entity_type, error_type):
        self.events.append(("error", entity_type, error_type))

    def named(self, name):
        return [e for e in self.events if e[0] == name]


def shared_settings(**overrides):
    settings = {
        "cache": {"mode": "shared-ttl", "ttl_ms": 60000},
        "retry": {"max_attempts": 3, "base_delay_ms": 1, "max_delay_ms": 5, "jitter": False},
    }
    settings.update(overrides)
    return EngineSettings(**settings)


class TestRetry:
    """Retry behaviour of a batch fetch."""

    @pytest.mark.asyncio
    async def test_transient_failures_then_success(self, users, fast_settings):
        """Test two transient failures followed by success yields the value after 3 calls."""
        fetcher = RecordingFetcher(users, failures=[
            TransientFetchError("connection reset"),
            TransientFetchError("connection reset"),
        ])
        metrics = DummyMetrics()

        async with Engine({"User": fetcher}, fast_settings, metrics=metrics) as engine:
            user = await engine.load("User", 1)

        assert user is users[1]
        assert fetcher.calls == [[1], [1], [1]]
        assert metrics.named("retry") == [("retry", "User", 1), ("retry", "User", 2)]
        assert metrics.named("latency") == [("latency", "User", "ok")]

    @pytest.mark.asyncio
    async def test_retries_exhausted_is_batch_failure(self, users, fast_settings):
        """Test exhausted retries reject every waiter with a BatchLoadError."""
        fetcher = RecordingFetcher(users, failures=[ConnectionError("down")] * 3)

        async with Engine({"User": fetcher}, fast_settings) as engine:
            results = await engine.load_many("User", [1, 2], return_exceptions=True)

        assert len(fetcher.calls) == 3
        first, second = results
        assert isinstance(first, BatchLoadError)
        assert first is second
        assert first.entity_type == "User"
        assert first.keys == [1, 2]
        assert isinstance(first.cause, RetryError)
        assert first.details["attempts"] == 3

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, users, fast_settings):
        """Test a permanent failure raised by the fetcher is not retried."""
        fetcher = RecordingFetcher(users, failures=[PermanentFetchError("bad filter")])

        async with Engine({"User": fetcher}, fast_settings) as engine:
            with pytest.raises(BatchLoadError) as exc_info:
                await engine.load("User", 1)

        assert fetcher.calls == [[1]]
        assert isinstance(exc_info.value.cause, PermanentFetchError)

    @pytest.mark.asyncio
    async def test_batch_failure_is_not_cached(self, users, fast_settings):
        """Test a failed batch leaves the keys loadable by a later batch."""
        fetcher = RecordingFetcher(users, failures=[ValueError("boom")])

        async with Engine({"User": fetcher}, fast_settings) as engine:
            with pytest.raises(BatchLoadError):
                await engine.load("User", 1)
            user = await engine.load("User", 1)

        assert user is users[1]
        assert fetcher.calls == [[1], [1]]

    @pytest.mark.asyncio
    async def test_transient_per_key_error_not_cached(self, fast_settings):
        """Test a transient error reported for one key is delivered but not cached."""
        flaky = TransientFetchError("replica lag")
        fetcher = RecordingFetcher({1: flaky, 2: "two"})

        async with Engine({"Doc": fetcher}, fast_settings) as engine:
            with pytest.raises(TransientFetchError):
                await engine.load("Doc", 1)
            fetcher.data[1] = "one"
            assert await engine.load("Doc", 1) == "one"

        assert fetcher.calls == [[1], [1]]

    @pytest.mark.asyncio
    async def test_invalid_outcomes_fail_batch(self, fast_settings):
        """Test a fetcher returning an unusable shape fails the batch."""
        async def bad_fetch(entity_type, keys):
            return 42

        async with Engine({"Doc": bad_fetch}, fast_settings) as engine:
            with pytest.raises(BatchLoadError) as exc_info:
                await engine.load("Doc", 1)

        assert isinstance(exc_info.value.cause, TypeError)


class TestTimeout:
    """Per-attempt fetch timeout."""

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self, users):
        """Test a timed-out attempt is retried like any transient failure."""
        fetcher = RecordingFetcher(users)
        slow_once = {"pending": True}

        async def fetch(entity_type, keys):
            if slow_once.pop("pending", False):
                await asyncio.sleep(1)
            return await fetcher(entity_type, keys)

        settings = EngineSettings(
            fetch_timeout_ms=20,
            retry={"max_attempts": 2, "base_delay_ms": 1, "jitter": False},
        )
        async with Engine({"User": fetch}, settings) as engine:
            user = await engine.load("User", 1)

        assert user is users[1]

    @pytest.mark.asyncio
    async def test_timeout_exhausts_retries(self):
        """Test persistent timeouts surface as a batch-level failure."""
        calls = []

        async def fetch(entity_type, keys):
            calls.append(list(keys))
            await asyncio.sleep(1)

        settings = EngineSettings(
            fetch_timeout_ms=10,
            retry={"max_attempts": 2, "base_delay_ms": 1, "jitter": False},
        )
        async with Engine({"User": fetch}, settings) as engine:
            with pytest.raises(BatchLoadError) as exc_info:
                await engine.load("User", 1)

        assert len(calls) == 2
        assert isinstance(exc_info.value.cause, RetryError)


class TestCancellation:
    """Scope close while batches are open or in flight."""

    @pytest.mark.asyncio
    async def test_close_while_flushing(self, users):
        """Test closing during a fetch rejects waiters and caches nothing."""
        cancelled = []
        started = asyncio.Event()

        async def fetch(entity_type, keys):
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(list(keys))
                raise
            return {k: users[k] for k in keys}

        engine = Engine({"User": fetch}, shared_settings())
        engine.open()
        first = engine.load("User", 1)
        second = engine.load("User", 2)
        await started.wait()

        await engine.close()

        with pytest.raises(CancellationError) as exc_info:
            await first
        with pytest.raises(CancellationError):
            await second
        assert exc_info.value.details["in_flight"] is True
        assert cancelled == [[1, 2]]
        assert len(engine.cache) == 0

    @pytest.mark.asyncio
    async def test_late_result_is_discarded(self, users):
        """Test a fetcher that ignores cancellation never populates the cache."""
        started = asyncio.Event()

        async def stubborn_fetch(entity_type, keys):
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                pass
            return {k: users[k] for k in keys}

        engine = Engine({"User": stubborn_fetch}, shared_settings())
        engine.open()
        future = engine.load("User", 1)
        await started.wait()
        await engine.close()

        with pytest.raises(CancellationError):
            await future
        assert len(engine.cache) == 0

    @pytest.mark.asyncio
    async def test_close_rejects_open_batch(self, user_fetcher):
        """Test waiters of a batch that never flushed are rejected too."""
        engine = Engine({"User": user_fetcher})
        engine.open()
        future = engine.load("User", 1)

        await engine.close()

        with pytest.raises(CancellationError) as exc_info:
            await future
        assert exc_info.value.details["in_flight"] is False
        await asyncio.sleep(0)
        assert user_fetcher.calls == []

    @pytest.mark.asyncio
    async def test_no_retry_after_close(self, users):
        """Test a fetcher reporting cancellation as a transient error is not called again."""
        calls = []
        started = asyncio.Event()

        async def fetch(entity_type, keys):
            calls.append(list(keys))
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                raise ConnectionError("socket closed")
            return {k: users[k] for k in keys}

        settings = EngineSettings(
            retry={"max_attempts": 3, "base_delay_ms": 5000, "max_delay_ms": 5000, "jitter": False},
        )
        engine = Engine({"User": fetch}, settings)
        engine.open()
        future = engine.load("User", 1)
        await started.wait()

        await asyncio.wait_for(engine.close(), timeout=1)

        with pytest.raises(CancellationError):
            await future
        assert calls == [[1]]

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, user_fetcher):
        """Test closing a closed engine is a no-op."""
        engine = Engine({"User": user_fetcher})
        await engine.close()
        engine.open()
        await engine.close()
        await engine.close()
        assert not engine.is_open


class TestHooks:
    """Hooks around the flush step."""

    @pytest.mark.asyncio
    async def test_hooks_run_in_order(self, user_fetcher):
        """Test before/after hooks observe each flushed batch."""
        seen = []

        def before(batch):
            seen.append(("before", batch.entity_type, list(batch.keys), batch.state))

        def after(batch, error):
            seen.append(("after", batch.entity_type, batch.attempts, error))

        engine = Engine({"User": user_fetcher}, before_flush=[before], after_flush=[after])
        async with engine:
            await engine.load_many("User", [1, 2])

        assert seen == [
            ("before", "User", [1, 2], BatchState.FLUSHING),
            ("after", "User", 1, None),
        ]

    @pytest.mark.asyncio
    async def test_before_hook_failure_fails_batch(self, user_fetcher):
        """Test an exception in a before hook rejects the batch."""
        def before(batch):
            raise RuntimeError("hook exploded")

        errors = []
        engine = Engine(
            {"User": user_fetcher},
            before_flush=[before],
            after_flush=[lambda batch, error: errors.append(error)]
        )
        async with engine:
            with pytest.raises(BatchLoadError):
                await engine.load("User", 1)

        assert user_fetcher.calls == []
        assert isinstance(errors[0], BatchLoadError)

    @pytest.mark.asyncio
    async def test_after_hook_failure_is_reported(self, user_fetcher):
        """Test a failing after hook is reported to the sink without losing the value."""
        metrics = DummyMetrics()

        def after(batch, error):
            raise RuntimeError("hook exploded")

        async with Engine({"User": user_fetcher}, metrics=metrics, after_flush=[after]) as engine:
            user = await engine.load("User", 1)

        assert user["id"] == 1
        assert ("error", "User", "HookError") in metrics.events


class TestNestedLoads:
    """Fetchers that load other entity types."""

    @pytest.mark.asyncio
    async def test_nested_load_does_not_deadlock(self, users):
        """Test a fetcher loading another entity type under a limit of one slot."""
        user_fetcher = RecordingFetcher(users)
        posts = {10: {"id": 10, "author_id": 1}, 11: {"id": 11, "author_id": 2}}
        engine = Engine({"User": user_fetcher}, EngineSettings(max_concurrent_fetches=1))

        async def fetch_posts(entity_type, keys):
            rows = [posts[k] for k in keys]
            authors = await engine.load_many("User", [r["author_id"] for r in rows])
            return {r["id"]: {**r, "author": a} for r, a in zip(rows, authors)}

        engine.registry.register(fetch_posts, entity_type="Post")

        async with engine:
            result = await asyncio.wait_for(engine.load_many("Post", [10, 11]), timeout=2)

        assert [p["author"]["name"] for p in result] == ["user-1", "user-2"]
        assert user_fetcher.calls == [[1, 2]]
        assert engine.limiter.active == 0

    @pytest.mark.asyncio
    async def test_nested_load_of_key_queued_behind_parent(self, users):
        """Test a fetcher loading a key whose batch waits for the fetcher's own slot."""
        user_fetcher = RecordingFetcher(users)
        engine = Engine({"User": user_fetcher}, EngineSettings(max_concurrent_fetches=1))

        async def fetch_posts(entity_type, keys):
            authors = await engine.load_many("User", [1])
            return {k: {"id": k, "author": authors[0]} for k in keys}

        engine.registry.register(fetch_posts, entity_type="Post")

        async with engine:
            post, user = await asyncio.wait_for(
                asyncio.gather(engine.load("Post", 10), engine.load("User", 1)),
                timeout=2
            )

        assert post["author"]["name"] == "user-1"
        assert user["name"] == "user-1"
        assert user_fetcher.calls == [[1], [1]]
        assert engine.limiter.active == 0

    @pytest.mark.asyncio
    async def test_unrelated_loads_still_join_queued_batch(self, users):
        """Test callers without a slot keep joining a batch queued for a slot."""
        user_fetcher = RecordingFetcher(users)
        engine = Engine({"User": user_fetcher}, EngineSettings(max_concurrent_fetches=1))

        async with engine:
            first = engine.load("User", 1)
            await asyncio.sleep(0)
            second = engine.load("User", 1)
            assert await first is await second

        assert user_fetcher.calls == [[1]]


class TestFailingSideEffects:
    """A raising cache or sink must not strand waiters."""

    @pytest.mark.asyncio
    async def test_raising_sink_resolves_every_waiter(self, users):
        """Test per-key errors and values are delivered when the sink raises."""
        class ExplodingMetrics(DummyMetrics):
            def record_error(self, entity_type, error_type):
                raise RuntimeError("sink down")

        async with Engine({"User": RecordingFetcher(users)}, metrics=ExplodingMetrics()) as engine:
            results = await asyncio.wait_for(
                engine.load_many("User", [99, 1, 2], return_exceptions=True),
                timeout=1
            )

        assert isinstance(results[0], KeyNotFound)
        assert [r["id"] for r in results[1:]] == [1, 2]

    @pytest.mark.asyncio
    async def test_raising_cache_resolves_every_waiter(self, users):
        """Test values are delivered and the failure counted when the cache raises."""
        class BrokenCache(ScopedResultCache):
            def set_if_absent(self, entity_type, key, entry):
                raise RuntimeError("cache down")

        metrics = DummyMetrics()
        async with Engine({"User": RecordingFetcher(users)}, cache=BrokenCache(), metrics=metrics) as engine:
            results = await asyncio.wait_for(engine.load_many("User", [1, 2]), timeout=1)

        assert [r["id"] for r in results] == [1, 2]
        assert ("error", "User", "RuntimeError") in metrics.events


class TestObservability:
    """Events delivered to the sink."""

    @pytest.mark.asyncio
    async def test_sink_events(self, user_fetcher):
        """Test flush, cache and error events reach the sink."""
        metrics = DummyMetrics()

        async with Engine({"User": user_fetcher}, metrics=metrics) as engine:
            await engine.load_many("User", [1, 99], return_exceptions=True)
            await engine.load("User", 1)

        assert metrics.named("flushed") == [("flushed", "User", 2)]
        assert len(metrics.named("miss")) == 2
        assert metrics.named("hit") == [("hit", "User")]
        assert metrics.named("error") == [("error", "User", "KeyNotFound")]
