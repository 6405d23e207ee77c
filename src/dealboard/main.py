"""FastAPI application factory.

Creates the app with scope middleware, logging middleware, metrics
middleware, CORS, Sentry, lifespan events for database and change feed
initialization, and the deal board API router. Every error response is
rendered as ``{"error": "<message>"}``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException

from src.dealboard.config import get_settings
from src.dealboard.core.database import close_db, get_session, init_db
from src.dealboard.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.dealboard.core.redis import close_redis, get_redis_pool
from src.dealboard.core.tenant import BoardScopeMiddleware
from src.dealboard.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.dealboard.api.routes.router import router as api_router
from src.dealboard.deals.feed import DealChangeFeed
from src.dealboard.deals.repository import DealRepository


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, change feed and Sentry on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    app.state.deal_repository = DealRepository(session_factory=get_session)

    # Without a feed the API still serves writes; publishing is skipped.
    try:
        app.state.change_feed = DealChangeFeed(get_redis_pool(), maxlen=settings.FEED_MAXLEN)
        log.info("startup.change_feed_initialized")
    except Exception:
        log.warning("startup.change_feed_init_failed", exc_info=True)
        app.state.change_feed = None

    yield

    await close_db()
    await close_redis()


# ── Error Rendering ──────────────────────────────────────────────────────────


async def _http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


async def _validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Deal Board API",
        version="0.1.0",
        description="Deal pipeline board with optimistic stage changes and a realtime change feed",
        lifespan=lifespan,
    )

    app.add_exception_handler(HTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)

    # Middleware is added in reverse order (last added = outermost)

    # Scope middleware (inner -- resolves team/user scope from headers)
    app.add_middleware(BoardScopeMiddleware)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(api_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
