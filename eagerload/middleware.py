"""
Request-scoped engines for FastAPI/Starlette applications.

    factory = EngineFactory({"User": fetch_users})
    app = FastAPI()
    app.add_middleware(EngineScopeMiddleware, factory=factory)
    install_error_handlers(app)

    @app.get("/posts/{post_id}/author")
    async def author(post_id: int, loader: Engine = Depends(get_engine)):
        ...
"""

from typing import Dict, Type

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

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
from .logging import get_logger, request_id_var, scope_context, set_request_id

STATE_KEY = "loader"

ERROR_STATUS: Dict[Type[EagerLoadError], int] = {
    KeyNotFound: 404,
    PermanentFetchError: 422,
    TransientFetchError: 503,
    CancellationError: 503,
    BatchLoadError: 502,
    ConfigurationError: 500,
}


class EngineScopeMiddleware:
    """Opens one engine scope per HTTP request and closes it afterwards."""

    def __init__(self, app: ASGIApp, factory: EngineFactory):
        self.app = app
        self.factory = factory
        self.logger = get_logger("eagerload.middleware")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        token = request_id_var.set(None)
        headers = dict(scope.get("headers") or [])
        request_id = headers.get(b"x-request-id")
        set_request_id(request_id.decode("latin-1") if request_id else None)

        engine = self.factory.create()
        scope.setdefault("state", {})[STATE_KEY] = engine
        try:
            async with engine:
                with scope_context(engine.scope_id):
                    await self.app(scope, receive, send)
        finally:
            request_id_var.reset(token)


def get_engine(request: Request) -> Engine:
    """FastAPI dependency returning the request's engine."""
    engine = getattr(request.state, STATE_KEY, None)
    if engine is None:
        raise ScopeError("EngineScopeMiddleware is not installed")
    return engine


def status_for(exc: EagerLoadError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS:
            return ERROR_STATUS[error_type]
    return 400


def install_error_handlers(app: FastAPI) -> None:
    """Render engine errors as ``ErrorResponse`` JSON bodies."""
    logger = get_logger("eagerload.middleware")

    @app.exception_handler(EagerLoadError)
    async def eagerload_exception_handler(request: Request, exc: EagerLoadError):
        status_code = status_for(exc)
        log = logger.error if status_code >= 500 else logger.warning
        log(
            "Load error",
            code=exc.code,
            message=exc.message,
            details=exc.details,
            path=request.url.path
        )
        return JSONResponse(
            status_code=status_code,
            content=exc.to_response().model_dump()
        )
