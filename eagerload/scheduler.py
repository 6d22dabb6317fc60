"""
Batch scheduler: closes batches and drives them through the fetch pipeline.

A flush is deferred with ``loop.call_soon`` when a batch opens, so every
``load`` issued during the current step of the event loop (including sibling
tasks that are already runnable) joins the same batch. A batch that reaches its
size limit is flushed on the spot.

Each flush runs as its own task::

    limiter slot -> before hooks -> retry(timeout(fetcher)) -> distribute -> after hooks
"""

import asyncio
import contextvars
import time
from typing import Any, Callable, Dict, Hashable, List, Optional, Set

from opentelemetry import trace

from .batcher import Batch, BatchState, KeyBatcher, PendingRequest
from .cache import ResultCache
from .errors import BatchLoadError, CancellationError
from .fetcher import FetcherRegistration, invoke_fetcher, normalize_outcomes
from .limiter import ConcurrencyLimiter
from .logging import bind_flush_context, get_logger
from .metrics import NullSink, ObservabilitySink
from .retry import RetryError, RetryPolicy

BeforeFlushHook = Callable[[Batch], None]
AfterFlushHook = Callable[[Batch, Optional[BaseException]], None]

tracer = trace.get_tracer("eagerload")


class BatchScheduler:
    """Owns the flush lifecycle of every batch in one scope."""

    def __init__(self,
                 batcher: KeyBatcher,
                 cache: ResultCache,
                 limiter: ConcurrencyLimiter,
                 retry_policy: RetryPolicy,
                 *,
                 max_batch_size: int = 100,
                 fetch_timeout: Optional[float] = None,
                 sink: Optional[ObservabilitySink] = None,
                 before_flush: Optional[List[BeforeFlushHook]] = None,
                 after_flush: Optional[List[AfterFlushHook]] = None,
                 scope_id: Optional[str] = None,
                 logger=None):
        self.batcher = batcher
        self.cache = cache
        self.limiter = limiter
        self.retry_policy = retry_policy
        self.max_batch_size = max_batch_size
        self.fetch_timeout = fetch_timeout
        self.sink = sink or NullSink()
        self.before_flush = list(before_flush or [])
        self.after_flush = list(after_flush or [])
        self.scope_id = scope_id
        self.logger = logger or get_logger("eagerload.scheduler")

        self._tasks: Set[asyncio.Task] = set()
        self.batches_flushed = 0
        self.fetch_calls = 0

    def enqueue(self, registration: FetcherRegistration, key: Hashable) -> asyncio.Future:
        """Register a waiter for ``key``; never suspends."""
        loop = asyncio.get_running_loop()
        entity_type = registration.entity_type
        request = PendingRequest(key=key, future=loop.create_future())

        holds_slot = self.limiter.holds_slot()
        waiting = self.batcher.find_waiting(entity_type, key, holds_slot)
        if waiting is not None:
            waiting.add(request)
            return request.future

        batch, created = self.batcher.open_batch(entity_type, borrows_slot=holds_slot)
        batch.add(request)
        if created:
            # The flush task runs in the opener's context whoever triggers it
            batch.context = contextvars.copy_context()
            batch.handle = loop.call_soon(self._flush_due, batch, registration)

        limit = registration.max_batch_size or self.max_batch_size
        if len(batch) >= limit:
            self.logger.debug("Batch size limit reached", entity_type=entity_type, size=len(batch))
            self.dispatch(batch, registration)

        return request.future

    def _flush_due(self, batch: Batch, registration: FetcherRegistration) -> None:
        batch.handle = None
        if batch.state is BatchState.OPEN:
            self.dispatch(batch, registration)

    def dispatch(self, batch: Batch, registration: FetcherRegistration) -> asyncio.Task:
        """OPEN -> FLUSHING: snapshot the batch and start its fetch task."""
        if batch.handle is not None:
            batch.handle.cancel()
            batch.handle = None
        self.batcher.detach(batch)
        self.batches_flushed += 1

        context = batch.context or contextvars.copy_context()
        task = context.run(
            asyncio.get_running_loop().create_task,
            self._run(batch, registration),
            name=f"eagerload-flush-{batch.entity_type}"
        )
        batch.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, batch: Batch, registration: FetcherRegistration) -> None:
        entity_type = batch.entity_type
        keys = list(batch.keys)
        error: Optional[BaseException] = None
        bind_flush_context(self.scope_id, entity_type)

        try:
            async with self.limiter.slot(entity_type) as borrowed:
                batch.started = True
                for hook in self.before_flush:
                    hook(batch)

                self.sink.record_batch_flushed(entity_type, len(keys))
                self.logger.debug(
                    "Flushing batch",
                    entity_type=entity_type,
                    size=len(keys),
                    borrowed_slot=borrowed
                )
                outcomes = await self._fetch(batch, registration, keys)
        except asyncio.CancelledError:
            error = CancellationError(details={"entity_type": entity_type})
            self._reject(batch, error)
            raise
        except Exception as e:
            error = BatchLoadError(entity_type, keys, e)
            if isinstance(e, RetryError):
                error.details["attempts"] = e.attempts
            self._reject(batch, error)
            self.logger.error(
                "Batch load failed",
                entity_type=entity_type,
                size=len(keys),
                attempts=batch.attempts,
                error=str(e)
            )
            self._report(entity_type, type(e).__name__)
        else:
            self._distribute(batch, outcomes)
        finally:
            self.batcher.complete(batch)
            self._run_after_hooks(batch, error)

    def _run_after_hooks(self, batch: Batch, error: Optional[BaseException]) -> None:
        for hook in self.after_flush:
            try:
                hook(batch, error)
            except Exception:
                self.logger.exception("after_flush hook failed", entity_type=batch.entity_type)
                self._report(batch.entity_type, "HookError")

    def _report(self, entity_type: str, error_type: str) -> None:
        """Count an error with the sink; a failing sink is logged only."""
        try:
            self.sink.record_error(entity_type, error_type)
        except Exception:
            self.logger.exception("Observability sink failed", entity_type=entity_type, error_type=error_type)

    async def _fetch(self, batch: Batch, registration: FetcherRegistration,
                     keys: List[Hashable]) -> Dict[Hashable, Any]:
        entity_type = batch.entity_type

        async def attempt():
            if batch.cancelled:
                raise asyncio.CancelledError()
            batch.attempts += 1
            self.fetch_calls += 1
            call = invoke_fetcher(registration, keys)
            if self.fetch_timeout is not None:
                return await asyncio.wait_for(call, timeout=self.fetch_timeout)
            return await call

        def on_retry(attempt_number: int, exc: BaseException) -> None:
            # A fetcher may report its own cancellation as a transient error
            if batch.cancelled:
                raise asyncio.CancelledError()
            self.sink.record_retry(entity_type, attempt_number)

        start = time.perf_counter()
        outcome = "error"
        with tracer.start_as_current_span(
            "eagerload.fetch",
            attributes={"eagerload.entity_type": entity_type, "eagerload.batch_size": len(keys)}
        ) as span:
            try:
                raw = await self.retry_policy.call(
                    attempt,
                    name=f"fetch {entity_type}",
                    on_retry=on_retry
                )
                outcome = "ok"
            except asyncio.CancelledError:
                outcome = "cancelled"
                raise
            finally:
                span.set_attribute("eagerload.attempts", batch.attempts)
                self.sink.record_fetch_latency(entity_type, time.perf_counter() - start, outcome)

        return normalize_outcomes(entity_type, keys, raw)

    def _distribute(self, batch: Batch, outcomes: Dict[Hashable, Any]) -> None:
        """Resolve each key's waiters, then cache and count the outcomes.

        Waiters are settled before any cache or sink call so that a failing
        cache or sink cannot leave a waiter unresolved.
        """
        entity_type = batch.entity_type

        for key in batch.keys:
            outcome = outcomes[key]
            for request in batch.waiters[key]:
                if request.future.done():
                    continue
                if isinstance(outcome, BaseException):
                    request.future.set_exception(outcome)
                else:
                    request.future.set_result(outcome)

        try:
            self._record_outcomes(batch, outcomes)
        except Exception as e:
            self.logger.exception("Recording batch outcomes failed", entity_type=entity_type, size=len(batch))
            self._report(entity_type, type(e).__name__)

    def _record_outcomes(self, batch: Batch, outcomes: Dict[Hashable, Any]) -> None:
        entity_type = batch.entity_type
        write_cache = not batch.cancelled

        for key in batch.keys:
            outcome = outcomes[key]
            if isinstance(outcome, BaseException):
                self.sink.record_error(entity_type, type(outcome).__name__)
                if write_cache and not self.retry_policy.is_transient(outcome):
                    self._store(entity_type, key, self.cache.make_error(outcome))
            elif write_cache:
                self._store(entity_type, key, self.cache.make_value(outcome))

    def _store(self, entity_type: str, key: Hashable, entry) -> None:
        if self.cache.shared:
            self.cache.set(entity_type, key, entry)
        else:
            self.cache.set_if_absent(entity_type, key, entry)

    @staticmethod
    def _reject(batch: Batch, error: BaseException) -> None:
        for request in batch.pending():
            if not request.future.done():
                request.future.set_exception(error)

    def cancel_all(self) -> List[asyncio.Task]:
        """Reject every outstanding waiter and cancel in-flight fetches.

        Returns the cancelled tasks so the caller can wait for them to unwind.
        """
        tasks: List[asyncio.Task] = []
        for batch in self.batcher.drain():
            was_flushing = batch.state is BatchState.FLUSHING
            batch.state = BatchState.CANCELLED
            if batch.handle is not None:
                batch.handle.cancel()
                batch.handle = None

            error = CancellationError(
                details={
                    "entity_type": batch.entity_type,
                    "keys": [repr(k) for k in batch.keys],
                    "in_flight": was_flushing,
                }
            )
            self._reject(batch, error)
            self._report(batch.entity_type, "CancellationError")

            if batch.task is not None and not batch.task.done():
                batch.task.cancel()
                tasks.append(batch.task)

            self.logger.info(
                "Cancelled batch at scope close",
                entity_type=batch.entity_type,
                size=len(batch),
                in_flight=was_flushing
            )
        return tasks

    @property
    def pending_tasks(self) -> Set[asyncio.Task]:
        return set(self._tasks)
