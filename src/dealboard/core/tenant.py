"""Board scope propagation via Python contextvars.

A deal board is scoped to a team when the user belongs to one, otherwise to
the user alone. The BoardScope is set by middleware at the start of each
request and is accessible anywhere in the call stack via
get_current_scope(). Repository queries and change feed stream keys are
derived from it.
"""

from __future__ import annotations

import contextvars
from dataclasses import dataclass

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

logger = structlog.get_logger(__name__)

TEAM_HEADER = "X-Team-ID"
USER_HEADER = "X-User-ID"

# ── Board Scope ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class BoardScope:
    """Immutable tenant scope for the current request or board session."""

    team_id: str | None = None
    user_id: str | None = None

    def __post_init__(self) -> None:
        if not self.team_id and not self.user_id:
            raise ValueError("BoardScope needs a team_id or a user_id")

    @property
    def key(self) -> str:
        """Team scope wins over user scope, e.g. ``team:abc`` or ``user:42``."""
        if self.team_id:
            return f"team:{self.team_id}"
        return f"user:{self.user_id}"

    def headers(self) -> dict[str, str]:
        """Request headers that carry this scope to the API."""
        headers: dict[str, str] = {}
        if self.team_id:
            headers[TEAM_HEADER] = self.team_id
        if self.user_id:
            headers[USER_HEADER] = self.user_id
        return headers


_board_scope: contextvars.ContextVar[BoardScope] = contextvars.ContextVar("board_scope")


def get_current_scope() -> BoardScope:
    """Get the board scope for the current request.

    Raises RuntimeError if no scope has been set (i.e., the call is not
    within a scoped request).
    """
    try:
        return _board_scope.get()
    except LookupError:
        raise RuntimeError("No board scope set -- request is not tenant-scoped")


def set_board_scope(scope: BoardScope) -> contextvars.Token[BoardScope]:
    """Set the board scope for the current request. Returns a token for reset."""
    return _board_scope.set(scope)


# ── Paths that skip scope resolution ────────────────────────────────────────

SKIP_SCOPE_PATHS = (
    "/health",
    "/metrics",
    "/docs",
    "/openapi.json",
    "/redoc",
)


# ── Scope Middleware ────────────────────────────────────────────────────────


class BoardScopeMiddleware(BaseHTTPMiddleware):
    """Resolves the board scope from X-Team-ID / X-User-ID headers.

    Requests outside SKIP_SCOPE_PATHS without either header are rejected
    with 401.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path.startswith(SKIP_SCOPE_PATHS):
            return await call_next(request)

        team_id = request.headers.get(TEAM_HEADER) or None
        user_id = request.headers.get(USER_HEADER) or None
        if not team_id and not user_id:
            logger.warning("scope.missing", path=request.url.path)
            return JSONResponse(status_code=401, content={"error": "Missing team or user scope"})

        token = set_board_scope(BoardScope(team_id=team_id, user_id=user_id))
        try:
            return await call_next(request)
        finally:
            _board_scope.reset(token)
