"""
Engine: public façade of the batch-loading engine.

One ``Engine`` instance serves one scope at a time (typically one incoming
request)::

    engine = Engine({"User": fetch_users, "Post": fetch_posts})
    async with engine:
        posts = await engine.load_many("Post", post_ids)
        authors = await engine.load_many("User", [p.author_id for p in posts])

``EngineFactory`` builds per-scope engines that share a shared-TTL cache, the
global concurrency limiter and the metrics sink.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Hashable, Iterable, List, Mapping, Optional

from .batcher import KeyBatcher
from .cache import ResultCache, SharedTTLCache, create_cache
from .config import EngineSettings
from .errors import ScopeError
from .fetcher import FetcherRegistry, FetcherSpec
from .limiter import ConcurrencyLimiter
from .logging import get_logger, new_scope_id
from .metrics import NullSink, ObservabilitySink
from .retry import RetryConfig, RetryPolicy
from .scheduler import AfterFlushHook, BatchScheduler, BeforeFlushHook

_MISSING = object()


class Engine:
    """Batches and caches keyed lookups inside one scope."""

    def __init__(self,
                 fetchers: "FetcherRegistry | Mapping[str, FetcherSpec]",
                 settings: Optional[EngineSettings] = None,
                 *,
                 cache: Optional[ResultCache] = None,
                 limiter: Optional[ConcurrencyLimiter] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 metrics: Optional[ObservabilitySink] = None,
                 before_flush: Optional[List[BeforeFlushHook]] = None,
                 after_flush: Optional[List[AfterFlushHook]] = None):
        self.settings = settings or EngineSettings()
        self.registry = fetchers if isinstance(fetchers, FetcherRegistry) else FetcherRegistry(fetchers)
        self.cache = cache if cache is not None else create_cache(self.settings.cache)
        self.limiter = limiter or ConcurrencyLimiter(
            self.settings.max_concurrent_fetches,
            {**self.settings.per_type_concurrency, **self.registry.concurrency_limits()}
        )
        self.retry_policy = retry_policy or RetryPolicy(RetryConfig.from_settings(self.settings.retry))
        self.metrics = metrics or NullSink()
        self._before_flush = list(before_flush or [])
        self._after_flush = list(after_flush or [])

        self.scope_id: Optional[str] = None
        self._scheduler: Optional[BatchScheduler] = None
        self.logger = get_logger("eagerload.engine")

    @property
    def is_open(self) -> bool:
        return self._scheduler is not None

    def open(self) -> "Engine":
        """Start a scope."""
        if self._scheduler is not None:
            raise ScopeError("Scope already open", {"scope_id": self.scope_id})

        self.scope_id = new_scope_id()
        self.logger = get_logger("eagerload.engine").bind(scope_id=self.scope_id)
        self._scheduler = BatchScheduler(
            KeyBatcher(),
            self.cache,
            self.limiter,
            self.retry_policy,
            max_batch_size=self.settings.max_batch_size,
            fetch_timeout=self.settings.fetch_timeout,
            sink=self.metrics,
            before_flush=self._before_flush,
            after_flush=self._after_flush,
            scope_id=self.scope_id,
            logger=get_logger("eagerload.scheduler").bind(scope_id=self.scope_id),
        )
        self.logger.info("Scope opened", cache="shared-ttl" if self.cache.shared else "scoped")
        return self

    async def close(self) -> None:
        """End the scope.

        Outstanding waiters are rejected with ``CancellationError``, in-flight
        fetches are cancelled and their results are never cached. The
        scope-local cache is dropped.
        """
        scheduler = self._scheduler
        if scheduler is None:
            return
        self._scheduler = None

        tasks = scheduler.cancel_all()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.cache.on_scope_close()

        self.logger.info(
            "Scope closed",
            batches_flushed=scheduler.batches_flushed,
            fetch_calls=scheduler.fetch_calls,
            cancelled_fetches=len(tasks)
        )

    async def __aenter__(self) -> "Engine":
        return self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _require_scope(self) -> BatchScheduler:
        if self._scheduler is None:
            raise ScopeError("No open scope; call Engine.open() first")
        return self._scheduler

    def load(self, entity_type: str, key: Hashable) -> asyncio.Future:
        """Return a future for one key; never suspends.

        Raises ``ConfigurationError`` immediately when no fetcher is registered
        for ``entity_type``.
        """
        registration = self.registry.get(entity_type)
        scheduler = self._require_scope()
        hash(key)

        entry = self.cache.get(entity_type, key)
        if entry is not None:
            self.metrics.record_cache_hit(entity_type)
            future = asyncio.get_running_loop().create_future()
            if entry.is_error:
                future.set_exception(entry.error)
            else:
                future.set_result(entry.value)
            return future

        self.metrics.record_cache_miss(entity_type)
        return scheduler.enqueue(registration, key)

    def load_many(self, entity_type: str, keys: Iterable[Hashable], *,
                  return_exceptions: bool = False) -> asyncio.Future:
        """Return a future of values in the same order as ``keys``.

        With ``return_exceptions=True`` per-key errors are placed in the
        result list instead of failing the whole future.
        """
        keys = list(keys)
        if not keys:
            self.registry.get(entity_type)
            self._require_scope()
            future = asyncio.get_running_loop().create_future()
            future.set_result([])
            return future

        futures = [self.load(entity_type, key) for key in keys]
        return asyncio.gather(*futures, return_exceptions=return_exceptions)

    def prime_key(self, entity_type: str, key: Hashable, value: Any = _MISSING, *,
                  error: Optional[BaseException] = None) -> bool:
        """Seed the cache for a key unless it is already populated.

        Pass ``error`` instead of a value to prime a negative entry. Returns
        True when the entry was written.
        """
        self.registry.get(entity_type)
        if (value is _MISSING) == (error is None):
            raise ValueError("prime_key takes exactly one of value or error")

        entry = self.cache.make_error(error) if error is not None else self.cache.make_value(value)
        written = self.cache.set_if_absent(entity_type, key, entry)
        if written:
            self.logger.debug("Primed cache entry", entity_type=entity_type, key=repr(key))
        return written

    def clear_key(self, entity_type: str, key: Hashable) -> bool:
        """Invalidate one cache entry."""
        removed = self.cache.delete(entity_type, key)
        self.logger.debug("Cleared cache entry", entity_type=entity_type, key=repr(key), removed=removed)
        return removed

    def clear_all(self, entity_type: Optional[str] = None) -> int:
        """Invalidate every cache entry, or every entry of one entity type."""
        removed = self.cache.clear(entity_type)
        self.logger.debug("Cleared cache", entity_type=entity_type, removed=removed)
        return removed

    def stats(self) -> Dict[str, Any]:
        """Counters for the current scope and the cache."""
        scheduler = self._scheduler
        cache_stats = self.cache.stats
        return {
            "scope_id": self.scope_id,
            "open": scheduler is not None,
            "batches_flushed": scheduler.batches_flushed if scheduler else 0,
            "fetch_calls": scheduler.fetch_calls if scheduler else 0,
            "open_batches": scheduler.batcher.open_count if scheduler else 0,
            "in_flight_batches": scheduler.batcher.in_flight_count if scheduler else 0,
            "cache_entries": len(self.cache),
            "cache_hits": cache_stats.hits,
            "cache_misses": cache_stats.misses,
            "cache_hit_rate": cache_stats.hit_rate,
        }


class EngineFactory:
    """Creates per-scope engines sharing cross-scope resources.

    Only the shared-TTL cache (when configured), the concurrency limiter and
    the metrics sink are shared; batches and waiters stay private to each
    engine.
    """

    def __init__(self,
                 fetchers: "FetcherRegistry | Mapping[str, FetcherSpec]",
                 settings: Optional[EngineSettings] = None,
                 *,
                 metrics: Optional[ObservabilitySink] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 before_flush: Optional[List[BeforeFlushHook]] = None,
                 after_flush: Optional[List[AfterFlushHook]] = None,
                 clock: Optional[Callable[[], float]] = None):
        self.settings = settings or EngineSettings()
        self.registry = fetchers if isinstance(fetchers, FetcherRegistry) else FetcherRegistry(fetchers)
        self.metrics = metrics or NullSink()
        self.retry_policy = retry_policy or RetryPolicy(RetryConfig.from_settings(self.settings.retry))
        self.before_flush = list(before_flush or [])
        self.after_flush = list(after_flush or [])
        self._clock = clock
        self.limiter = ConcurrencyLimiter(
            self.settings.max_concurrent_fetches,
            {**self.settings.per_type_concurrency, **self.registry.concurrency_limits()}
        )
        self.shared_cache: Optional[SharedTTLCache] = None
        if self.settings.cache.mode == "shared-ttl":
            self.shared_cache = self._make_cache()

    def _make_cache(self) -> ResultCache:
        if self._clock is None:
            return create_cache(self.settings.cache)
        return create_cache(self.settings.cache, clock=self._clock)

    def create(self) -> Engine:
        """Build an engine; the caller opens and closes its scope."""
        return Engine(
            self.registry,
            self.settings,
            cache=self.shared_cache if self.shared_cache is not None else self._make_cache(),
            limiter=self.limiter,
            retry_policy=self.retry_policy,
            metrics=self.metrics,
            before_flush=self.before_flush,
            after_flush=self.after_flush,
        )

    @asynccontextmanager
    async def scope(self) -> AsyncIterator[Engine]:
        """Open a fresh engine scope for the body."""
        engine = self.create()
        async with engine:
            yield engine
