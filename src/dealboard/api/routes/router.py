"""API router -- aggregates the health and deal endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.dealboard.api.routes import deals, health

router = APIRouter()

router.include_router(health.router)
router.include_router(deals.router)
