"""Deal and row builders shared by the deal board tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from src.dealboard.deals.schemas import Deal, DealRow
from src.dealboard.deals.stages import Stage

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_deal(deal_id: str = "d1", stage: Stage = Stage.LEAD, **fields) -> Deal:
    """Board card with stable defaults; ``updated_at`` defaults to T0."""
    defaults = {
        "title": f"Deal {deal_id}",
        "company": "Acme",
        "value": 1000.0,
        "contact_name": "Ayşe Yılmaz",
        "contact_initials": "AY",
        "created_at": T0,
        "updated_at": T0,
    }
    defaults.update(fields)
    return Deal(id=deal_id, stage=stage, **defaults)


def make_row(deal_id: str = "d1", **fields) -> DealRow:
    """Row carrying only the given fields (unset fields stay unset)."""
    return DealRow(id=deal_id, **fields)


class FixedClock:
    """Callable clock that advances one second per call."""

    def __init__(self, start: datetime = T0 + timedelta(minutes=5)) -> None:
        self.start = start
        self.calls = 0

    def __call__(self) -> datetime:
        value = self.start + timedelta(seconds=self.calls)
        self.calls += 1
        return value
