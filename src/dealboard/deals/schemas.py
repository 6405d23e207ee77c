"""Pydantic schemas for the deal board -- cards, rows, patches, feed events.

Defines the structured types shared by the board client and the API:
- Deal: immutable card state held by the DealStore (always a canonical stage)
- DealRow: persisted/feed representation, every field but ``id`` optional
- DealPatch: the subset of card fields a feed update may change
- Member: team member used to resolve owner names
- DealChangeEvent: insert/update/delete notification carried on the change feed
- DealCreate: payload for creating a deal server side
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    model_validator,
)

from src.dealboard.deals.stages import Stage, classify_stage


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def create_initials(name: str) -> str:
    """Two-letter initials from a display name, ``??`` when empty."""
    parts = [part for part in name.strip().split(" ") if part]
    if not parts:
        return "??"
    if len(parts) == 1:
        return parts[0][0].upper()
    return f"{parts[0][0]}{parts[-1][0]}".upper()


def _coerce_stage(value: Any) -> Any:
    if isinstance(value, Stage):
        return value
    if value is None or isinstance(value, str):
        return classify_stage(value)
    return value


CanonicalStage = Annotated[Stage, BeforeValidator(_coerce_stage)]


def _assume_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Naive timestamps are read as UTC so they compare with aware ones.
UtcDatetime = Annotated[datetime, AfterValidator(_assume_utc)]


# ── Board State ─────────────────────────────────────────────────────────────


class Deal(BaseModel):
    """One card on the deal board.

    Frozen so that every mutation produces a new instance; the store relies
    on identity to tell whether anything changed. Raw stage labels are
    classified on construction.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    company: str = ""
    value: float = 0.0
    currency: str = "TRY"
    stage: CanonicalStage = Stage.LEAD
    contact_name: str = ""
    contact_initials: str = "??"
    owner_id: str | None = None
    owner_name: str = ""
    owner_initials: str = "??"
    owner_avatar_url: str | None = None
    created_at: UtcDatetime = Field(default_factory=utc_now)
    updated_at: UtcDatetime = Field(default_factory=utc_now)


class DealPatch(BaseModel):
    """Fields a remote update may change; unset fields are left alone."""

    title: str | None = None
    value: float | None = None
    stage: Stage | None = None
    owner_id: str | None = None
    owner_name: str | None = None
    owner_initials: str | None = None
    owner_avatar_url: str | None = None
    updated_at: UtcDatetime | None = None

    def changes(self) -> dict[str, Any]:
        """Explicitly set fields as a dict suitable for ``model_copy(update=...)``."""
        return self.model_dump(exclude_unset=True)


class Member(BaseModel):
    """Team member that can own deals."""

    id: str
    name: str
    avatar_url: str | None = None


# ── Persisted / Feed Rows ───────────────────────────────────────────────────


class DealRow(BaseModel):
    """A ``deals`` row as stored and as carried on the change feed.

    Feed updates may be partial; ``model_fields_set`` tells which columns
    the event actually carried.
    """

    id: str
    title: str | None = None
    value: float | None = None
    currency: str | None = None
    stage: str | None = None
    user_id: str | None = None
    team_id: str | None = None
    contact_id: str | None = None
    contact_name: str | None = None
    company: str | None = None
    owner_name: str | None = None
    owner_avatar_url: str | None = None
    created_at: UtcDatetime | None = None
    updated_at: UtcDatetime | None = None

    def present(self, field: str) -> bool:
        """True if the row carried a non-null value for ``field``."""
        return field in self.model_fields_set and getattr(self, field) is not None


class DealCreate(BaseModel):
    """Payload for creating a deal."""

    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(min_length=1)
    value: float = 0.0
    currency: str = "TRY"
    stage: CanonicalStage = Stage.LEAD
    contact_id: str | None = None
    contact_name: str | None = None
    company: str | None = None
    owner_id: str | None = None


# ── Change Feed Events ──────────────────────────────────────────────────────


class ChangeType(str, Enum):
    """Row change kinds delivered by the realtime feed."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class DealChangeEvent(BaseModel):
    """A row-level change to the ``deals`` table.

    INSERT and UPDATE carry the new row state in ``new``; DELETE carries the
    removed row in ``old``. Events flatten to string dicts for Redis Streams
    and decode back with partial rows intact.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: ChangeType
    table: str = "deals"
    commit_timestamp: UtcDatetime = Field(default_factory=utc_now)
    new: DealRow | None = None
    old: DealRow | None = None

    @model_validator(mode="after")
    def _validate_rows(self) -> DealChangeEvent:
        """Ensure the row the event type needs is present."""
        if self.event_type == ChangeType.DELETE:
            if self.old is None:
                msg = "DELETE events must carry the old row"
                raise ValueError(msg)
        elif self.new is None:
            msg = f"{self.event_type.value} events must carry the new row"
            raise ValueError(msg)
        return self

    @property
    def record_id(self) -> str:
        row = self.old if self.event_type == ChangeType.DELETE else self.new
        assert row is not None
        return row.id

    def to_stream_dict(self) -> dict[str, str]:
        """Serialize to a flat dict of strings for XADD.

        Rows are JSON-encoded with unset fields excluded so that a partial
        update decodes back as partial. Missing rows become empty strings.
        """
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "table": self.table,
            "commit_timestamp": self.commit_timestamp.isoformat(),
            "new": self.new.model_dump_json(exclude_unset=True) if self.new else "",
            "old": self.old.model_dump_json(exclude_unset=True) if self.old else "",
        }

    @classmethod
    def from_stream_dict(cls, data: dict[str, str]) -> DealChangeEvent:
        """Deserialize from a Redis Stream entry.

        Raises:
            ValueError: If the entry is malformed (pydantic ValidationError
                is a ValueError subclass).
        """
        fields: dict[str, Any] = {
            "event_id": data["event_id"],
            "event_type": data["event_type"],
            "table": data.get("table", "deals"),
            "commit_timestamp": data["commit_timestamp"],
        }
        for key in ("new", "old"):
            raw = data.get(key, "")
            if raw:
                fields[key] = DealRow.model_validate(json.loads(raw))
        return cls(**fields)
