"""Request logging and structlog setup.

Each request gets a request id (taken from an incoming ``X-Request-ID`` or
freshly generated) that is bound into structlog's context variables, so
every log line emitted while handling the request carries it together
with the caller's board scope. One summary line is written per request:
``request_completed`` or, when the handler raised, ``request_error``.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.dealboard.config import Environment, Settings, get_settings
from src.dealboard.core.tenant import TEAM_HEADER, USER_HEADER

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _renderer(settings: Settings) -> structlog.types.Processor:
    if settings.ENVIRONMENT == Environment.production:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def configure_structlog(settings: Settings | None = None) -> None:
    """Route structlog through stdlib logging; JSON lines in production."""
    settings = settings or get_settings()
    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(settings),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _request_context(request: Request) -> dict[str, str | None]:
    return {
        "request_id": request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4()),
        "team_id": request.headers.get(TEAM_HEADER) or None,
        "user_id": request.headers.get(USER_HEADER) or None,
    }


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class LoggingMiddleware(BaseHTTPMiddleware):
    """Binds request context for the duration of a request and logs its outcome.

    The request id is echoed back in the ``X-Request-ID`` response header.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        context = _request_context(request)
        started = time.monotonic()

        with structlog.contextvars.bound_contextvars(**context):
            try:
                response = await call_next(request)
            except Exception:
                logger.error(
                    "request_error",
                    method=request.method,
                    path=request.url.path,
                    status_code=500,
                    duration_ms=_elapsed_ms(started),
                )
                raise

            response.headers[REQUEST_ID_HEADER] = context["request_id"]
            logger.log(
                _level_for(response.status_code),
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=_elapsed_ms(started),
            )
            return response


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 2)
