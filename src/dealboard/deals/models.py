"""Deal persistence model.

DealModel stores the stage in its persisted spelling (see stages.db_stage)
and denormalizes the contact snapshot shown on cards. Scope columns
(team_id, user_id) drive both query filtering and change feed routing.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, Index, String, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.dealboard.core.database import Base


class DealModel(Base):
    """One sales opportunity on the board."""

    __tablename__ = "deals"
    __table_args__ = (
        Index("ix_deals_team_id", "team_id"),
        Index("ix_deals_user_id", "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    team_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    contact_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    contact_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    company: Mapped[str | None] = mapped_column(String(200), nullable=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    value: Mapped[float] = mapped_column(Float, default=0.0, server_default=text("0"))
    currency: Mapped[str] = mapped_column(String(3), default="TRY", server_default=text("'TRY'"))
    stage: Mapped[str] = mapped_column(String(50), default="lead", server_default=text("'lead'"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
