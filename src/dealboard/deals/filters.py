"""Board filtering and sorting.

BoardFilters mirrors the filter panel of the deal board. The functions
here never mutate the store; they derive the visible list from it.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field

from src.dealboard.deals.schemas import Deal, utc_now
from src.dealboard.deals.stages import STAGE_CONFIGS, Stage

OWNER_ALL = "all"
OWNER_UNASSIGNED = "unassigned"


class DateWindow(str, Enum):
    ALL = "all"
    THIS_MONTH = "thisMonth"
    LAST_7 = "last7"
    LAST_30 = "last30"
    LAST_90 = "last90"


class SortOrder(str, Enum):
    NEWEST = "newest"
    OLDEST = "oldest"
    VALUE_HIGH = "valueHigh"
    VALUE_LOW = "valueLow"


_WINDOW_DAYS: dict[DateWindow, int] = {
    DateWindow.LAST_7: 7,
    DateWindow.LAST_30: 30,
    DateWindow.LAST_90: 90,
}


class BoardFilters(BaseModel):
    """Filter panel state.

    ``owner`` is ``all``, ``unassigned`` or a member id. An empty
    ``stages`` list means every stage.
    """

    search: str = ""
    owner: str = OWNER_ALL
    date_window: DateWindow = DateWindow.ALL
    stages: list[Stage] = Field(default_factory=list)
    min_value: float | None = None
    max_value: float | None = None
    sort: SortOrder = SortOrder.NEWEST
    show_lost: bool = False


def window_start(window: DateWindow, now: datetime) -> datetime | None:
    """Earliest creation time admitted by a date window."""
    if window == DateWindow.THIS_MONTH:
        return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    days = _WINDOW_DAYS.get(window)
    if days is None:
        return None
    return now - timedelta(days=days)


def filter_deals(
    deals: Sequence[Deal],
    filters: BoardFilters,
    now: datetime | None = None,
) -> list[Deal]:
    result = list(deals)

    query = filters.search.strip().lower()
    if query:
        result = [
            deal
            for deal in result
            if query
            in " ".join(
                part
                for part in (deal.title, deal.company, deal.contact_name, deal.owner_name)
                if part
            ).lower()
        ]

    if filters.owner == OWNER_UNASSIGNED:
        result = [deal for deal in result if not deal.owner_id]
    elif filters.owner != OWNER_ALL:
        result = [deal for deal in result if deal.owner_id == filters.owner]

    start = window_start(filters.date_window, now or utc_now())
    if start is not None:
        result = [deal for deal in result if deal.created_at >= start]

    if filters.stages:
        result = [deal for deal in result if deal.stage in filters.stages]

    if filters.min_value is not None:
        result = [deal for deal in result if deal.value >= filters.min_value]
    if filters.max_value is not None:
        result = [deal for deal in result if deal.value <= filters.max_value]

    return result


def sort_deals(deals: Sequence[Deal], order: SortOrder) -> list[Deal]:
    if order == SortOrder.OLDEST:
        return sorted(deals, key=lambda deal: deal.updated_at)
    if order == SortOrder.VALUE_HIGH:
        return sorted(deals, key=lambda deal: deal.value, reverse=True)
    if order == SortOrder.VALUE_LOW:
        return sorted(deals, key=lambda deal: deal.value)
    return sorted(deals, key=lambda deal: deal.updated_at, reverse=True)


def visible_deals(
    deals: Sequence[Deal],
    filters: BoardFilters,
    now: datetime | None = None,
) -> list[Deal]:
    """Filtered then sorted deals as the board renders them."""
    return sort_deals(filter_deals(deals, filters, now), filters.sort)


def visible_stages(filters: BoardFilters) -> list[Stage]:
    """Board columns; the lost column is hidden unless asked for."""
    return [
        config.stage
        for config in STAGE_CONFIGS
        if filters.show_lost or config.stage != Stage.LOST
    ]
