"""Deal repository -- async CRUD over the ``deals`` table.

Provides DealRepository with the session_factory callable pattern. Every
method takes the caller's BoardScope first and only ever sees rows inside
that scope: the team's deals for team scopes, the user's own deals
otherwise.

Stage and owner updates are idempotent: asking for the value a deal
already has returns the current row without writing, so retried requests
neither bump ``updated_at`` nor publish a second change event.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealboard.core.tenant import BoardScope
from src.dealboard.deals.models import DealModel
from src.dealboard.deals.schemas import DealCreate, DealRow
from src.dealboard.deals.stages import Stage, classify_stage, db_stage

logger = structlog.get_logger(__name__)


class DealNotFoundError(Exception):
    """Deal does not exist or is outside the caller's scope."""

    def __init__(self, deal_id: str) -> None:
        super().__init__(f"Deal not found: {deal_id}")
        self.deal_id = deal_id


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_row(model: DealModel) -> DealRow:
    """Convert DealModel to DealRow schema."""
    return DealRow(
        id=str(model.id),
        title=model.title,
        value=model.value,
        currency=model.currency,
        stage=model.stage,
        user_id=model.user_id,
        team_id=model.team_id,
        contact_id=model.contact_id,
        contact_name=model.contact_name,
        company=model.company,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _parse_id(deal_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(deal_id)
    except ValueError:
        raise DealNotFoundError(deal_id)


def _scoped(stmt, scope: BoardScope):
    if scope.team_id:
        return stmt.where(DealModel.team_id == scope.team_id)
    return stmt.where(DealModel.user_id == scope.user_id)


class DealRepository:
    """Async CRUD operations for deals.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def _load(self, session: AsyncSession, scope: BoardScope, deal_id: str) -> DealModel:
        stmt = _scoped(select(DealModel).where(DealModel.id == _parse_id(deal_id)), scope)
        result = await session.execute(stmt)
        model = result.scalar_one_or_none()
        if model is None:
            raise DealNotFoundError(deal_id)
        return model

    async def list_deals(self, scope: BoardScope) -> list[DealRow]:
        """All deals visible in ``scope``, most recently updated first."""
        async for session in self._session_factory():
            stmt = _scoped(select(DealModel), scope).order_by(DealModel.updated_at.desc())
            result = await session.execute(stmt)
            return [_model_to_row(m) for m in result.scalars().all()]

    async def get_deal(self, scope: BoardScope, deal_id: str) -> DealRow | None:
        async for session in self._session_factory():
            try:
                model = await self._load(session, scope, deal_id)
            except DealNotFoundError:
                return None
            return _model_to_row(model)

    async def create_deal(self, scope: BoardScope, data: DealCreate) -> DealRow:
        """Create a deal owned by ``data.owner_id`` (or the scope's user)."""
        async for session in self._session_factory():
            now = datetime.now(timezone.utc)
            model = DealModel(
                team_id=scope.team_id,
                user_id=data.owner_id or scope.user_id,
                contact_id=data.contact_id,
                contact_name=data.contact_name,
                company=data.company,
                title=data.title,
                value=data.value,
                currency=data.currency,
                stage=db_stage(data.stage),
                created_at=now,
                updated_at=now,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info("deal_repository.created", deal_id=str(model.id), scope=scope.key)
            return _model_to_row(model)

    async def update_stage(
        self, scope: BoardScope, deal_id: str, stage: Stage
    ) -> tuple[DealRow, bool]:
        """Move a deal to ``stage``.

        Returns:
            The current row and whether a write happened.

        Raises:
            DealNotFoundError: If the deal is missing or out of scope.
        """
        async for session in self._session_factory():
            model = await self._load(session, scope, deal_id)
            if classify_stage(model.stage) == stage:
                return _model_to_row(model), False

            model.stage = db_stage(stage)
            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_row(model), True

    async def assign_owner(
        self, scope: BoardScope, deal_id: str, owner_id: str
    ) -> tuple[DealRow, bool]:
        """Reassign a deal. Returns the current row and whether a write happened."""
        async for session in self._session_factory():
            model = await self._load(session, scope, deal_id)
            if model.user_id == owner_id:
                return _model_to_row(model), False

            model.user_id = owner_id
            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_row(model), True

    async def delete_deal(self, scope: BoardScope, deal_id: str) -> DealRow:
        """Delete a deal and return its last state."""
        async for session in self._session_factory():
            model = await self._load(session, scope, deal_id)
            row = _model_to_row(model)
            await session.delete(model)
            await session.commit()
            logger.info("deal_repository.deleted", deal_id=deal_id, scope=scope.key)
            return row
