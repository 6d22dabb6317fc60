"""
Structured logging for the eagerload engine.

Events are enriched from context variables, so anything logged while a batch
is being fetched (the fetcher's own logging included) carries the scope id and
entity type of that flush, plus the request id under ``EngineScopeMiddleware``.
"""

import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

import structlog
from opentelemetry import trace

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
scope_id_var: ContextVar[Optional[str]] = ContextVar('eagerload_scope_id', default=None)
entity_type_var: ContextVar[Optional[str]] = ContextVar('eagerload_entity_type', default=None)

_LOAD_CONTEXT = (
    ("request_id", request_id_var),
    ("scope_id", scope_id_var),
    ("entity_type", entity_type_var),
)


def configure_logging(service_name: str = "eagerload", log_level: str = "info") -> None:
    """Configure JSON logging for the host process."""
    level = getattr(logging, log_level.upper())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_component,
            add_trace_context,
            add_load_context,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger(service_name).setLevel(level)


def add_component(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Tag engine events with the emitting component (``scheduler``, ``cache`` ...)."""
    logger_name = event_dict.get("logger", "")
    if logger_name.startswith("eagerload."):
        event_dict.setdefault("component", logger_name.split(".", 1)[1])
    return event_dict


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add the active OpenTelemetry trace and span ids."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        event_dict["span_id"] = f"{span_context.span_id:016x}"
    return event_dict


def add_load_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add request id, scope id and entity type of the load being served."""
    for name, var in _LOAD_CONTEXT:
        value = var.get()
        if value is not None:
            event_dict.setdefault(name, value)
    return event_dict


def new_scope_id() -> str:
    return uuid.uuid4().hex[:16]


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set the request id for the current context, generating one if missing."""
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def bind_flush_context(scope_id: Optional[str], entity_type: str) -> None:
    """Mark the current task as flushing ``entity_type`` for scope ``scope_id``.

    Called at the start of each flush task; the task owns a copy of the
    context, so nothing leaks back to the caller that issued the loads.
    """
    scope_id_var.set(scope_id)
    entity_type_var.set(entity_type)


@contextmanager
def scope_context(scope_id: Optional[str]) -> Iterator[None]:
    """Attach ``scope_id`` to log events emitted inside the block."""
    token = scope_id_var.set(scope_id)
    try:
        yield
    finally:
        scope_id_var.reset(token)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
