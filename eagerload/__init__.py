"""
eagerload: batch-loading and caching engine.

Resolves keyed lookups with one batched fetch per entity type per coalescing
window, caches results per scope (or in a shared TTL cache), bounds concurrent
fetches and retries transient failures.

- engine: ``Engine`` façade and per-scope ``EngineFactory``
- batcher / scheduler: key batching and the flush pipeline
- fetcher: adapter contract and entity-type registry
- cache: scoped and shared-TTL result caches
- limiter: concurrency limiter
- retry: retry policy with backoff
- config: settings via pydantic-settings
- logging: structlog configuration
- metrics: prometheus observability sink
- middleware: request-scoped engines for FastAPI/Starlette
"""

from .cache import CacheEntry, ResultCache, ScopedResultCache, SharedTTLCache, create_cache
from .config import CacheSettings, EngineSettings, RetrySettings, get_settings
from .engine import Engine, EngineFactory
from .errors import (
    BatchLoadError,
    CancellationError,
    ConfigurationError,
    EagerLoadError,
    KeyNotFound,
    PermanentFetchError,
    ScopeError,
    TransientFetchError,
)
from .fetcher import BaseFetcher, FetcherRegistration, FetcherRegistry
from .limiter import ConcurrencyLimiter
from .logging import configure_logging, get_logger
from .metrics import MetricsCollector, NullSink, ObservabilitySink
from .retry import RetryConfig, RetryError, RetryPolicy

__version__ = "0.1.0"

__all__ = [
    "BaseFetcher",
    "BatchLoadError",
    "CacheEntry",
    "CacheSettings",
    "CancellationError",
    "ConcurrencyLimiter",
    "ConfigurationError",
    "EagerLoadError",
    "Engine",
    "EngineFactory",
    "EngineSettings",
    "FetcherRegistration",
    "FetcherRegistry",
    "KeyNotFound",
    "MetricsCollector",
    "NullSink",
    "ObservabilitySink",
    "PermanentFetchError",
    "ResultCache",
    "RetryConfig",
    "RetryError",
    "RetryPolicy",
    "RetrySettings",
    "ScopeError",
    "ScopedResultCache",
    "SharedTTLCache",
    "TransientFetchError",
    "configure_logging",
    "create_cache",
    "get_logger",
    "get_settings",
]
