"""Relative-time labels shown on deal cards (Turkish UI copy)."""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel

from src.dealboard.deals.schemas import utc_now
from src.dealboard.deals.stages import Stage


class Tone(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"
    MUTED = "muted"


class ActivityMeta(BaseModel):
    label: str
    tone: Tone
    icon: str | None = None


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def format_relative_time(target: datetime, now: datetime | None = None) -> str:
    """Turkish relative label, e.g. "Az önce", "5 dk önce", "Yarın", "3 gün sonra"."""
    now = now or utc_now()
    diff_seconds = _round_half_up((target - now).total_seconds())
    if abs(diff_seconds) < 60:
        return "Az önce" if diff_seconds <= 0 else "Birazdan"

    diff_minutes = _round_half_up(diff_seconds / 60)
    if abs(diff_minutes) < 60:
        return f"{abs(diff_minutes)} dk önce" if diff_minutes < 0 else f"{diff_minutes} dk sonra"

    diff_hours = _round_half_up(diff_minutes / 60)
    if abs(diff_hours) < 24:
        return f"{abs(diff_hours)} saat önce" if diff_hours < 0 else f"{diff_hours} saat sonra"

    diff_days = _round_half_up(diff_hours / 24)
    if diff_days == -1:
        return "Dün"
    if diff_days == 1:
        return "Yarın"
    return f"{abs(diff_days)} gün önce" if diff_days < 0 else f"{diff_days} gün sonra"


def _local_date(value: datetime, now: datetime):
    return value.astimezone(now.tzinfo).date() if now.tzinfo else value.date()


def activity_meta(stage: Stage, updated_at: datetime, now: datetime | None = None) -> ActivityMeta:
    """Card footer label for a deal last touched at ``updated_at``."""
    now = now or utc_now()
    relative = format_relative_time(updated_at, now)
    target_day = _local_date(updated_at, now)
    today = _local_date(now, now)

    if stage == Stage.LEAD:
        if target_day == today:
            return ActivityMeta(label="Bugün", tone=Tone.URGENT, icon="priority_high")
        if target_day == today - timedelta(days=1):
            return ActivityMeta(label="Dün", tone=Tone.URGENT, icon="priority_high")
        return ActivityMeta(label=relative, tone=Tone.MUTED, icon="schedule")

    if stage == Stage.PROPOSAL:
        return ActivityMeta(label=f"Bekliyor • {relative}", tone=Tone.MUTED)

    if stage == Stage.NEGOTIATION:
        return ActivityMeta(label=f"Son görüşme: {relative}", tone=Tone.MUTED)

    if stage == Stage.WON:
        if target_day == today:
            return ActivityMeta(label="Bugün kapatıldı", tone=Tone.MUTED)
        return ActivityMeta(label=f"Kapatıldı • {relative}", tone=Tone.MUTED)

    return ActivityMeta(label=f"Kaybedildi • {relative}", tone=Tone.MUTED)
