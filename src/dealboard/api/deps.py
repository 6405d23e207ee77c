"""FastAPI dependency injection for scoped resources.

These dependencies are used in endpoint function signatures to inject the
caller's board scope, the deal repository and the change feed.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from src.dealboard.core.tenant import BoardScope, get_current_scope
from src.dealboard.deals.feed import DealChangeFeed
from src.dealboard.deals.repository import DealRepository


async def get_scope() -> BoardScope:
    """Get the board scope (set by BoardScopeMiddleware)."""
    try:
        return get_current_scope()
    except RuntimeError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing team or user scope",
        )


def get_deal_repository(request: Request) -> DealRepository:
    """Retrieve DealRepository from app.state, 503 if not available."""
    repo = getattr(request.app.state, "deal_repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Deal storage not initialized",
        )
    return repo


def get_change_feed(request: Request) -> DealChangeFeed | None:
    """Change feed from app.state; None disables publishing."""
    return getattr(request.app.state, "change_feed", None)
