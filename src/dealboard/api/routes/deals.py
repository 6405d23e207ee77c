"""REST API endpoints for the deal board.

Provides the stage confirmation and owner assignment endpoints the board
controller calls, plus list/create/delete. Every write that changes a row
is published to the realtime change feed of the row's team and owner.
Errors are rendered as ``{"error": "<message>"}`` by the app's exception
handlers.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from redis.exceptions import RedisError

import structlog

from src.dealboard.api.deps import get_change_feed, get_deal_repository, get_scope
from src.dealboard.core.tenant import BoardScope
from src.dealboard.deals.feed import DealChangeFeed, scopes_for_row
from src.dealboard.deals.repository import DealNotFoundError, DealRepository
from src.dealboard.deals.schemas import ChangeType, DealChangeEvent, DealCreate, DealRow
from src.dealboard.deals.stages import InvalidStageError, require_stage

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/deals", tags=["deals"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class StageChangeRequest(BaseModel):
    """Body of POST /api/deals/stage."""

    model_config = ConfigDict(populate_by_name=True)

    deal_id: str = Field(alias="dealId")
    stage: str


class AssignOwnerRequest(BaseModel):
    """Body of POST /api/deals/assign."""

    model_config = ConfigDict(populate_by_name=True)

    deal_id: str = Field(alias="dealId")
    owner_id: str = Field(alias="ownerId")


# ── Response Schemas ─────────────────────────────────────────────────────────


class DealResponse(BaseModel):
    deal: DealRow


class DealListResponse(BaseModel):
    deals: list[DealRow] = Field(default_factory=list)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _not_found(exc: DealNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


async def _publish(
    feed: DealChangeFeed | None,
    event: DealChangeEvent,
    scopes: list[BoardScope] | None = None,
) -> None:
    """Publish a committed change. Feed errors are logged, not raised.

    Goes to the row's team and owner streams unless ``scopes`` is given.
    """
    if feed is None:
        return
    row = event.new if event.new is not None else event.old
    assert row is not None
    try:
        await feed.publish(event, scopes if scopes is not None else scopes_for_row(row))
    except RedisError as exc:
        logger.error(
            "deals_api.publish_failed",
            deal_id=row.id,
            event_type=event.event_type.value,
            error=str(exc),
        )


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("", response_model=DealListResponse)
async def list_deals(
    scope: BoardScope = Depends(get_scope),
    repo: DealRepository = Depends(get_deal_repository),
) -> DealListResponse:
    """Every deal visible to the caller's board."""
    return DealListResponse(deals=await repo.list_deals(scope))


@router.post("", response_model=DealResponse, status_code=201)
async def create_deal(
    body: DealCreate,
    scope: BoardScope = Depends(get_scope),
    repo: DealRepository = Depends(get_deal_repository),
    feed: DealChangeFeed | None = Depends(get_change_feed),
) -> DealResponse:
    """Create a deal and announce it on the feed."""
    row = await repo.create_deal(scope, body)
    await _publish(feed, DealChangeEvent(event_type=ChangeType.INSERT, new=row))
    return DealResponse(deal=row)


@router.post("/stage", response_model=DealResponse)
async def change_stage(
    body: StageChangeRequest,
    scope: BoardScope = Depends(get_scope),
    repo: DealRepository = Depends(get_deal_repository),
    feed: DealChangeFeed | None = Depends(get_change_feed),
) -> DealResponse:
    """Confirm a stage move. Repeating the same move is a no-op."""
    try:
        stage = require_stage(body.stage)
    except InvalidStageError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    try:
        row, changed = await repo.update_stage(scope, body.deal_id, stage)
    except DealNotFoundError as exc:
        raise _not_found(exc)

    if changed:
        await _publish(feed, DealChangeEvent(event_type=ChangeType.UPDATE, new=row))
    logger.info(
        "deals_api.stage_changed",
        deal_id=body.deal_id,
        stage=stage.value,
        changed=changed,
    )
    return DealResponse(deal=row)


@router.post("/assign", response_model=DealResponse)
async def assign_owner(
    body: AssignOwnerRequest,
    scope: BoardScope = Depends(get_scope),
    repo: DealRepository = Depends(get_deal_repository),
    feed: DealChangeFeed | None = Depends(get_change_feed),
) -> DealResponse:
    """Reassign a deal to another member."""
    if not body.owner_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="ownerId is required",
        )

    previous = await repo.get_deal(scope, body.deal_id)
    try:
        row, changed = await repo.assign_owner(scope, body.deal_id, body.owner_id)
    except DealNotFoundError as exc:
        raise _not_found(exc)

    if changed:
        await _publish(feed, DealChangeEvent(event_type=ChangeType.UPDATE, new=row))
        if previous is not None and previous.user_id and previous.user_id != row.user_id:
            # The previous owner's personal board no longer shows this deal.
            await _publish(
                feed,
                DealChangeEvent(event_type=ChangeType.DELETE, old=previous),
                scopes=[BoardScope(user_id=previous.user_id)],
            )
        logger.info(
            "deals_api.owner_assigned",
            deal_id=body.deal_id,
            owner_id=row.user_id,
            previous_owner_id=previous.user_id if previous is not None else None,
        )
    return DealResponse(deal=row)


@router.delete("/{deal_id}", response_model=DealResponse)
async def delete_deal(
    deal_id: str,
    scope: BoardScope = Depends(get_scope),
    repo: DealRepository = Depends(get_deal_repository),
    feed: DealChangeFeed | None = Depends(get_change_feed),
) -> DealResponse:
    """Delete a deal and announce the removal."""
    try:
        row = await repo.delete_deal(scope, deal_id)
    except DealNotFoundError as exc:
        raise _not_found(exc)

    await _publish(feed, DealChangeEvent(event_type=ChangeType.DELETE, old=row))
    return DealResponse(deal=row)
