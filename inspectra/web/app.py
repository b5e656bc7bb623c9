"""FastAPI application factory for the Inspectra API."""

from __future__ import annotations

from contextlib import asynccontextmanager
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware

from inspectra.config import AppConfig
from inspectra.context import EngineContext
from inspectra.core.errors import InspectraError, InternalError, ValidationError
from inspectra.core.logging import bind_request_context, configure_logging
from inspectra.web.auth import SessionStore
from inspectra.web.routes import cron, health, inbound_webhooks, instances, push, signatures

logger = structlog.get_logger(__name__)


# Request Logging Middleware
class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid4()))
        bind_request_context(request_id)

        logger.info(
            "request_started",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)

            logger.info(
                "request_completed",
                status_code=response.status_code,
            )
            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as exc:
            logger.error("request_failed", error=str(exc))
            raise


# Exception Handlers
async def inspectra_error_handler(request: Request, exc: InspectraError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_error", code=exc.code, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("database_error", error=str(exc), exc_info=exc)
    return await inspectra_error_handler(request, InternalError("Database error"))


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg', 'Invalid request')}" if location else "Invalid request"
    return await inspectra_error_handler(request, ValidationError(message))


def create_app(config: AppConfig | None = None, context: EngineContext | None = None) -> FastAPI:
    """Build the API.

    ``context`` lets callers (tests, embedding processes) supply a pre-wired
    engine; otherwise one is built from ``config`` and closed on shutdown.
    """
    config = config or (context.config if context else AppConfig.from_env())
    configure_logging(config.log_level, config.json_logs)

    owns_context = context is None
    context = context or EngineContext.build(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.sessions.aclose()
        if owns_context:
            await context.aclose()
        else:
            await context.dispatcher.drain()

    app = FastAPI(
        title="Inspectra",
        description="Inspection instance lifecycle and notification engine",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.context = context
    app.state.sessions = SessionStore(config.session)

    app.add_middleware(RequestLoggingMiddleware)

    # Prometheus Metrics
    Instrumentator().instrument(app).expose(app)

    app.add_exception_handler(InspectraError, inspectra_error_handler)
    app.add_exception_handler(SQLAlchemyError, database_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # Include Routers
    app.include_router(health.router)
    app.include_router(cron.router)
    app.include_router(inbound_webhooks.router)
    app.include_router(instances.router)
    app.include_router(signatures.router)
    app.include_router(push.router)

    return app
