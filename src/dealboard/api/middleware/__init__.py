"""API middleware package."""

from src.dealboard.api.middleware.logging import LoggingMiddleware
from src.dealboard.core.tenant import BoardScopeMiddleware

__all__ = ["LoggingMiddleware", "BoardScopeMiddleware"]
