"""
Fetcher adapters and the entity-type registry.

A fetcher performs one batched retrieval for a list of unique keys of one
entity type. It may be a plain async callable::

    async def fetch_users(entity_type, keys):
        rows = await db.fetch_all(select(User).where(User.id.in_(keys)))
        return {row.id: row for row in rows}

or a ``BaseFetcher`` subclass. Outcomes are matched to keys by key, never by
position: return a mapping ``{key: value}`` or an iterable of ``(key, value)``
pairs, in any order. A value that is an exception instance is an error for that
key alone; keys left out are reported as ``KeyNotFound``.
"""

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Hashable,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from .errors import ConfigurationError, KeyNotFound

Outcomes = Union[Mapping[Hashable, Any], Iterable[Tuple[Hashable, Any]]]
Fetcher = Callable[[str, List[Hashable]], Awaitable[Outcomes]]


class BaseFetcher(ABC):
    """Class-based fetcher bound to one entity type."""

    entity_type: str = ""
    max_batch_size: Optional[int] = None
    max_concurrency: Optional[int] = None

    @abstractmethod
    async def fetch_many(self, keys: List[Hashable]) -> Outcomes:
        """Retrieve the given unique keys."""

    async def __call__(self, entity_type: str, keys: List[Hashable]) -> Outcomes:
        return await self.fetch_many(keys)


@dataclass(frozen=True)
class FetcherRegistration:
    """One fetcher bound to an entity type, with optional per-type limits."""

    entity_type: str
    fetch: Fetcher
    max_batch_size: Optional[int] = None
    max_concurrency: Optional[int] = None

    def __post_init__(self):
        if not self.entity_type:
            raise ConfigurationError("Fetcher registration needs an entity type")
        if not callable(self.fetch):
            raise ConfigurationError(
                f"Fetcher for {self.entity_type} is not callable",
                {"entity_type": self.entity_type}
            )
        if self.max_batch_size is not None and self.max_batch_size < 1:
            raise ConfigurationError(
                f"max_batch_size for {self.entity_type} must be at least 1",
                {"entity_type": self.entity_type, "max_batch_size": self.max_batch_size}
            )
        if self.max_concurrency is not None and self.max_concurrency < 1:
            raise ConfigurationError(
                f"max_concurrency for {self.entity_type} must be at least 1",
                {"entity_type": self.entity_type, "max_concurrency": self.max_concurrency}
            )


FetcherSpec = Union[Fetcher, BaseFetcher, FetcherRegistration]


class FetcherRegistry:
    """Maps entity types to their fetcher registrations."""

    def __init__(self, fetchers: Optional[Mapping[str, FetcherSpec]] = None):
        self._registrations: Dict[str, FetcherRegistration] = {}
        for entity_type, spec in (fetchers or {}).items():
            self.register(spec, entity_type=entity_type)

    def register(self, spec: FetcherSpec, entity_type: Optional[str] = None) -> FetcherRegistration:
        """Register a fetcher; a class-based fetcher supplies its own entity type."""
        if isinstance(spec, FetcherRegistration):
            registration = spec
        elif isinstance(spec, BaseFetcher):
            registration = FetcherRegistration(
                entity_type=entity_type or spec.entity_type,
                fetch=spec,
                max_batch_size=spec.max_batch_size,
                max_concurrency=spec.max_concurrency,
            )
        else:
            if entity_type is None:
                raise ConfigurationError("Plain fetcher callables need an entity type")
            registration = FetcherRegistration(entity_type=entity_type, fetch=spec)

        if registration.entity_type in self._registrations:
            raise ConfigurationError(
                f"Fetcher for {registration.entity_type} already registered",
                {"entity_type": registration.entity_type}
            )
        self._registrations[registration.entity_type] = registration
        return registration

    def get(self, entity_type: str) -> FetcherRegistration:
        """Resolve the registration or fail with ``ConfigurationError``."""
        try:
            return self._registrations[entity_type]
        except KeyError:
            raise ConfigurationError(
                f"No fetcher registered for entity type {entity_type!r}",
                {"entity_type": entity_type, "registered": sorted(self._registrations)}
            ) from None

    def __contains__(self, entity_type: str) -> bool:
        return entity_type in self._registrations

    def __iter__(self):
        return iter(self._registrations.values())

    def __len__(self) -> int:
        return len(self._registrations)

    def concurrency_limits(self) -> Dict[str, int]:
        return {
            r.entity_type: r.max_concurrency
            for r in self._registrations.values()
            if r.max_concurrency is not None
        }


def normalize_outcomes(entity_type: str, keys: Sequence[Hashable], outcomes: Any) -> Dict[Hashable, Any]:
    """Associate fetcher outcomes with the requested keys.

    Returns one entry per requested key: the value, the per-key exception the
    fetcher reported, or ``KeyNotFound`` for keys missing from the outcomes.
    Outcomes for keys that were not requested are ignored.
    """
    if outcomes is None:
        outcomes = {}
    if isinstance(outcomes, Mapping):
        pairs: Iterable[Tuple[Hashable, Any]] = outcomes.items()
    elif isinstance(outcomes, (str, bytes)) or not isinstance(outcomes, Iterable):
        raise TypeError(
            f"Fetcher for {entity_type} returned {type(outcomes).__name__}; "
            "expected a mapping or (key, value) pairs"
        )
    else:
        pairs = outcomes

    by_key: Dict[Hashable, Any] = {}
    requested = set(keys)
    for pair in pairs:
        try:
            key, value = pair
        except (TypeError, ValueError):
            raise TypeError(
                f"Fetcher for {entity_type} returned {pair!r}; expected (key, value) pairs"
            ) from None
        if key in requested:
            by_key[key] = value

    return {
        key: by_key[key] if key in by_key else KeyNotFound(entity_type, key)
        for key in keys
    }


async def invoke_fetcher(registration: FetcherRegistration, keys: List[Hashable]) -> Any:
    """Call a fetcher, accepting plain (non-async) callables as well."""
    result = registration.fetch(registration.entity_type, keys)
    if inspect.isawaitable(result):
        result = await result
    return result
