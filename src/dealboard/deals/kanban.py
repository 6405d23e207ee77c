"""Pure kanban helpers: drop-target resolution and optimistic stage mutation.

Drop targets are opaque tokens handed over by the drag layer. Columns are
registered as ``stage-<stage>`` and cards as ``deal-<id>``; dropping on a
card means dropping into that card's column.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from src.dealboard.deals.schemas import Deal
from src.dealboard.deals.stages import STAGE_CONFIGS, Stage, parse_stage

COLUMN_PREFIX = "stage-"
CARD_PREFIX = "deal-"


def column_token(stage: Stage) -> str:
    return f"{COLUMN_PREFIX}{stage.value}"


def card_token(deal_id: str) -> str:
    return f"{CARD_PREFIX}{deal_id}"


def parse_card_token(token: Any) -> str | None:
    """Deal id named by a card token, or None for any other token."""
    value = str(token)
    if value.startswith(CARD_PREFIX):
        return value[len(CARD_PREFIX):] or None
    return None


def resolve_drop_stage(token: Any, deals: Sequence[Deal]) -> Stage | None:
    """Stage implied by dropping onto ``token``.

    Returns None when the token names neither a known column nor a card
    that is still on the board. Callers treat None as a no-op.
    """
    value = str(token)
    if value.startswith(COLUMN_PREFIX):
        return parse_stage(value[len(COLUMN_PREFIX):])

    deal_id = parse_card_token(value)
    if deal_id is None:
        return None
    for deal in deals:
        if deal.id == deal_id:
            return deal.stage
    return None


def apply_optimistic_stage(
    deals: list[Deal],
    deal_id: str,
    stage: Stage,
    updated_at: datetime,
) -> list[Deal]:
    """Move one deal to ``stage`` and stamp it with ``updated_at``.

    Returns ``deals`` itself (same object) when the deal is missing or
    already in ``stage``, so callers can skip re-rendering on identity.
    Untouched deals are shared with the input list.
    """
    current = next((deal for deal in deals if deal.id == deal_id), None)
    if current is None or current.stage == stage:
        return deals

    return [
        deal.model_copy(update={"stage": stage, "updated_at": updated_at})
        if deal.id == deal_id
        else deal
        for deal in deals
    ]


# ── Column Views ────────────────────────────────────────────────────────────


class StageTotals(BaseModel):
    """Card count and summed value for one column."""

    count: int = 0
    value: float = 0.0


def group_by_stage(deals: Sequence[Deal]) -> dict[Stage, list[Deal]]:
    """Deals per column, every stage present, input order kept."""
    columns: dict[Stage, list[Deal]] = {config.stage: [] for config in STAGE_CONFIGS}
    for deal in deals:
        columns[deal.stage].append(deal)
    return columns


def stage_totals(deals: Sequence[Deal]) -> dict[Stage, StageTotals]:
    return {
        stage: StageTotals(count=len(items), value=sum(item.value for item in items))
        for stage, items in group_by_stage(deals).items()
    }
