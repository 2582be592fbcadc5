"""FastAPI application creation and configuration.

This module creates and configures the FastAPI application instance.
It registers exception handlers, request-id middleware, and routes.

Middleware Ordering:
- Middleware runs in reverse order of registration
- RequestIDMiddleware is added LAST so it runs FIRST (outermost)
- This ensures every response, including errors, gets X-Request-ID

Publish Lifecycle:
- httpx.AsyncClient is created at startup, stored in app.state
- The builder client, job registry, tree store and orchestrator are created
  once and stored in app.state; routes read them through quire.api.deps
- Startup resumes jobs left active by a previous process
- Shutdown stops poll tasks (job states are kept) and closes the HTTP client
"""

import json
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from quire.api.routes import create_api_router
from quire.config import PublishConfig, get_settings
from quire.db.session import get_session_factory
from quire.errors import ApiError, ApiErrorCode
from quire.logging import configure_logging, get_logger
from quire.middleware.request_id import RequestIDMiddleware
from quire.responses import (
    api_error_handler,
    error_response,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from quire.services.builder import BuilderClient, create_builder
from quire.services.publish import JobRegistry, PayloadSource, PublishOrchestrator
from quire.services.tree_store import TreeStore

# Configure structured logging at import time
configure_logging()

logger = get_logger(__name__)


def create_app(
    *,
    session_factory: sessionmaker[Session] | None = None,
    builder: BuilderClient | None = None,
    publish_config: PublishConfig | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        session_factory: Session factory for services (default: from DATABASE_URL).
        builder: Builder client (default: BUILDER_BACKEND over the shared httpx client).
        publish_config: Poll/timeout policy (default: from settings).

    Returns:
        Configured FastAPI application instance.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        factory = session_factory or get_session_factory()
        app.state.session_factory = factory

        app.state.httpx_client = httpx.AsyncClient(
            timeout=httpx.Timeout(30.0, connect=10.0),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )
        app.state.builder = builder or create_builder(settings, app.state.httpx_client)
        app.state.tree_store = TreeStore(factory)
        app.state.payloads = PayloadSource(
            factory, app.state.tree_store, settings.public_base_url
        )
        app.state.orchestrator = PublishOrchestrator(
            JobRegistry(factory),
            app.state.builder,
            app.state.payloads,
            publish_config or settings.publish_config(),
        )
        logger.info("publish_orchestrator_initialized", builder=app.state.builder.name)

        await app.state.orchestrator.resume()

        yield

        await app.state.orchestrator.shutdown()
        await app.state.builder.aclose()
        await app.state.httpx_client.aclose()
        logger.info("httpx_client_closed")

    app = FastAPI(
        title="Quire API",
        description="Chapter tree editing and publish orchestration for Quire books",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Register exception handlers
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Handle JSON decode errors from malformed JSON bodies
    @app.middleware("http")
    async def catch_json_decode_errors(request: Request, call_next):
        """Catch JSON decode errors before they reach route handlers."""
        if request.method in ("POST", "PUT", "PATCH"):
            content_type = request.headers.get("content-type", "")
            if "application/json" in content_type:
                body = await request.body()
                if body:
                    try:
                        json.loads(body)
                    except json.JSONDecodeError:
                        return JSONResponse(
                            status_code=400,
                            content=error_response(
                                ApiErrorCode.E_INVALID_REQUEST, "Malformed JSON body"
                            ),
                        )
        return await call_next(request)

    # Use router factory to avoid import-time settings loading
    app.include_router(create_api_router())

    return app


def add_request_id_middleware(app: FastAPI, log_requests: bool = True) -> None:
    """Add request-id middleware to the app.

    This should be called AFTER all other middleware is added, so it runs FIRST.
    This ensures every response includes X-Request-ID, including errors.

    Args:
        app: The FastAPI application.
        log_requests: Whether to log access entries for each request.
    """
    app.add_middleware(RequestIDMiddleware, log_requests=log_requests)
    logger.info("request_id_middleware_enabled")
