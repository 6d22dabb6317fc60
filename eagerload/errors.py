"""
Error taxonomy for the eagerload batch-loading engine.
"""

from typing import Any, Dict, Hashable, Optional, Sequence

from opentelemetry import trace
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class EagerLoadError(Exception):
    """Base exception for the engine."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class KeyNotFound(EagerLoadError):
    """The fetcher reported no value for a key."""

    def __init__(self, entity_type: str, key: Hashable):
        self.entity_type = entity_type
        self.key = key
        super().__init__(
            "KEY_NOT_FOUND",
            f"{entity_type} {key!r} not found",
            {"entity_type": entity_type, "key": repr(key)}
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, KeyNotFound):
            return NotImplemented
        return (self.entity_type, self.key) == (other.entity_type, other.key)

    def __hash__(self) -> int:
        return hash((self.entity_type, self.key))


class FetchError(EagerLoadError):
    """Fetcher failure raised or reported by an adapter."""

    code = "FETCH_ERROR"

    def __init__(self, message: str = "Fetch failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(self.code, message, details)


class TransientFetchError(FetchError):
    """Timeout/connectivity class failure, eligible for retry."""

    code = "TRANSIENT_FETCH_ERROR"


class PermanentFetchError(FetchError):
    """Validation/authorization class failure, never retried."""

    code = "PERMANENT_FETCH_ERROR"


class CancellationError(EagerLoadError):
    """The scope was closed while the load was outstanding."""

    def __init__(self, message: str = "Scope closed before the load resolved",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__("CANCELLED", message, details)


class ConfigurationError(EagerLoadError):
    """Engine misconfiguration detected at call time."""

    def __init__(self, message: str = "Configuration error", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class ScopeError(ConfigurationError):
    """Scope lifecycle misuse, e.g. loading outside an open scope."""


class BatchLoadError(EagerLoadError):
    """The fetcher call for a whole batch failed."""

    def __init__(self, entity_type: str, keys: Sequence[Hashable], cause: BaseException):
        self.entity_type = entity_type
        self.keys = list(keys)
        self.cause = cause
        super().__init__(
            "BATCH_LOAD_ERROR",
            f"Loading {len(self.keys)} {entity_type} key(s) failed: {cause}",
            {
                "entity_type": entity_type,
                "keys": [repr(k) for k in self.keys],
                "cause": type(cause).__name__,
            }
        )
        self.__cause__ = cause
