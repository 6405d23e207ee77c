"""Stage reconciliation controller for the deal board.

Orchestrates the drag -> optimistic move -> confirm-or-rollback lifecycle
and merges realtime feed events into the same DealStore:

- A drop resolving to a new stage is applied to the store before any
  network round-trip, then confirmed against the API.
- On success the server timestamp replaces the optimistic one (if sent).
- On rejection, transport failure or timeout the deal snaps back to its
  pre-drag stage and timestamp and the user sees an error message.
- Feed inserts/updates/deletes are reduced into the store independently;
  the store drops updates older than a pending optimistic move.

Nothing raised by collaborators escapes the controller. After close(),
late confirmation results and feed events are ignored.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

import structlog

from src.dealboard.core.monitoring import deal_feed_events_total, deal_stage_changes_total
from src.dealboard.deals.client import DealApiError, OwnerAssignment, StageConfirmation
from src.dealboard.deals.drag import DragEndEvent
from src.dealboard.deals.kanban import parse_card_token, resolve_drop_stage
from src.dealboard.deals.schemas import (
    ChangeType,
    Deal,
    DealChangeEvent,
    DealPatch,
    DealRow,
    Member,
    create_initials,
    utc_now,
)
from src.dealboard.deals.stages import Stage, classify_stage
from src.dealboard.deals.store import (
    DealDeleted,
    DealInserted,
    DealStore,
    DealUpdated,
    DealsReplaced,
    OwnerChanged,
    StageConfirmed,
    StageMoved,
    StageReverted,
    is_stale_remote,
)

logger = structlog.get_logger(__name__)

STAGE_UPDATE_ERROR = "Deal stage could not be updated"
ASSIGN_ERROR = "Deal owner could not be updated"
OWNER_FALLBACK = "Unassigned"
NEW_RECORD = "New record"
UNKNOWN_COMPANY = "Unknown"


# ── Collaborators ───────────────────────────────────────────────────────────


class DealApi(Protocol):
    """Server endpoints the controller needs (DealApiClient in production)."""

    async def confirm_stage(self, deal_id: str, stage: Stage) -> StageConfirmation: ...

    async def assign_owner(self, deal_id: str, owner_id: str) -> OwnerAssignment: ...

    async def list_deals(self) -> list[DealRow]: ...


class Notifier(Protocol):
    """User-visible transient notifications (toasts)."""

    def error(self, message: str) -> None: ...


class LogNotifier:
    """Notifier that writes to the log; used when no UI sink is attached."""

    def error(self, message: str) -> None:
        logger.warning("notifier.error", message=message)


class MemberDirectory:
    """Team members by id, used to resolve owner names and avatars."""

    def __init__(self, members: Iterable[Member] = ()) -> None:
        self._members = {member.id: member for member in members}

    def get(self, member_id: str | None) -> Member | None:
        if not member_id:
            return None
        return self._members.get(member_id)

    def replace(self, members: Iterable[Member]) -> None:
        self._members = {member.id: member for member in members}

    def __iter__(self):
        return iter(self._members.values())

    def __len__(self) -> int:
        return len(self._members)


@dataclass(frozen=True)
class DragSession:
    """Pre-drag snapshot of a deal whose stage move awaits confirmation."""

    deal_id: str
    previous_stage: Stage
    previous_updated_at: datetime


class ChangeOutcome(str, Enum):
    NOOP = "noop"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"
    IGNORED = "ignored"


# ── Controller ──────────────────────────────────────────────────────────────


class StageReconciliationController:
    """Owns the board's DealStore for the lifetime of one board session.

    Args:
        store: The board's single state container.
        api: Stage/owner confirmation endpoints.
        notifier: Sink for user-visible error messages.
        members: Directory for owner name resolution.
        confirm_timeout: Seconds to wait for a confirmation before rolling
            back. None waits for the transport's own timeout.
        clock: Source of optimistic timestamps.
    """

    def __init__(
        self,
        store: DealStore,
        api: DealApi,
        notifier: Notifier | None = None,
        members: MemberDirectory | None = None,
        confirm_timeout: float | None = 10.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._api = api
        self._notifier = notifier or LogNotifier()
        self._members = members or MemberDirectory()
        self._confirm_timeout = confirm_timeout
        self._clock = clock
        self._sessions: dict[str, DragSession] = {}
        self._closed = False
        self.stage_updating_id: str | None = None
        self.owner_updating_id: str | None = None

    @property
    def store(self) -> DealStore:
        return self._store

    @property
    def closed(self) -> bool:
        return self._closed

    def pending_session(self, deal_id: str) -> DragSession | None:
        return self._sessions.get(deal_id)

    def close(self) -> None:
        """Tear down; in-flight confirmations will be ignored when they land."""
        self._closed = True
        logger.info("controller.closed", in_flight=len(self._sessions))

    # ── Drag lifecycle ──────────────────────────────────────────────────

    async def handle_drag_end(self, event: DragEndEvent) -> ChangeOutcome:
        """Resolve a drop and run the stage change it implies."""
        if event.over_id is None:
            return ChangeOutcome.NOOP

        deal_id = parse_card_token(event.active_id)
        if deal_id is None:
            return ChangeOutcome.NOOP

        target = resolve_drop_stage(event.over_id, self._store.deals)
        if target is None:
            logger.debug("controller.drop_unresolved", deal_id=deal_id, over_id=event.over_id)
            return ChangeOutcome.NOOP

        return await self.apply_stage_change(deal_id, target)

    async def apply_stage_change(self, deal_id: str, target: Stage) -> ChangeOutcome:
        """Optimistically move ``deal_id`` to ``target`` and confirm it.

        Also used for programmatic moves (e.g. closing a deal as won).
        """
        if self._closed:
            return ChangeOutcome.IGNORED

        current = self._store.get(deal_id)
        if current is None or current.stage == target:
            return ChangeOutcome.NOOP

        if deal_id in self._sessions:
            logger.info("controller.drop_while_pending", deal_id=deal_id, stage=target.value)
            return ChangeOutcome.IGNORED

        session = DragSession(
            deal_id=deal_id,
            previous_stage=current.stage,
            previous_updated_at=current.updated_at,
        )
        self._store.dispatch(StageMoved(deal_id=deal_id, stage=target, updated_at=self._clock()))
        self._sessions[deal_id] = session
        self.stage_updating_id = deal_id

        logger.info(
            "controller.stage_move_started",
            deal_id=deal_id,
            from_stage=session.previous_stage.value,
            to_stage=target.value,
        )

        try:
            confirmation = await asyncio.wait_for(
                self._api.confirm_stage(deal_id, target),
                timeout=self._confirm_timeout,
            )
        except DealApiError as exc:
            return self._rollback_stage(session, exc.message or STAGE_UPDATE_ERROR, reason="rejected")
        except asyncio.TimeoutError:
            return self._rollback_stage(session, STAGE_UPDATE_ERROR, reason="timeout")
        except Exception as exc:
            logger.warning("controller.stage_confirm_failed", deal_id=deal_id, error=str(exc))
            return self._rollback_stage(session, STAGE_UPDATE_ERROR, reason="transport")
        finally:
            self._sessions.pop(deal_id, None)
            if self.stage_updating_id == deal_id:
                self.stage_updating_id = None

        if self._closed:
            return ChangeOutcome.IGNORED

        self._store.dispatch(StageConfirmed(deal_id=deal_id, updated_at=confirmation.updated_at))
        deal_stage_changes_total.labels(outcome="confirmed").inc()
        logger.info("controller.stage_move_confirmed", deal_id=deal_id, stage=target.value)
        return ChangeOutcome.CONFIRMED

    def _rollback_stage(self, session: DragSession, message: str, reason: str) -> ChangeOutcome:
        if self._closed:
            return ChangeOutcome.IGNORED

        self._store.dispatch(
            StageReverted(
                deal_id=session.deal_id,
                stage=session.previous_stage,
                updated_at=session.previous_updated_at,
            )
        )
        deal_stage_changes_total.labels(outcome=f"rolled_back_{reason}").inc()
        logger.warning(
            "controller.stage_move_rolled_back",
            deal_id=session.deal_id,
            stage=session.previous_stage.value,
            reason=reason,
        )
        self._notifier.error(message)
        return ChangeOutcome.ROLLED_BACK

    # ── Owner assignment ────────────────────────────────────────────────

    async def assign_owner(self, deal_id: str, owner_id: str) -> ChangeOutcome:
        """Optimistically reassign a deal and confirm it, rolling back on failure."""
        if self._closed:
            return ChangeOutcome.IGNORED

        current = self._store.get(deal_id)
        if current is None or not owner_id or current.owner_id == owner_id:
            return ChangeOutcome.NOOP

        previous = OwnerChanged(
            deal_id=deal_id,
            owner_id=current.owner_id,
            owner_name=current.owner_name,
            owner_initials=current.owner_initials,
            owner_avatar_url=current.owner_avatar_url,
        )
        member = self._members.get(owner_id)
        owner_name = member.name if member else OWNER_FALLBACK
        self._store.dispatch(
            OwnerChanged(
                deal_id=deal_id,
                owner_id=owner_id,
                owner_name=owner_name,
                owner_initials=create_initials(owner_name),
                owner_avatar_url=member.avatar_url if member else None,
            )
        )
        self.owner_updating_id = deal_id

        message: str | None = None
        try:
            await asyncio.wait_for(
                self._api.assign_owner(deal_id, owner_id),
                timeout=self._confirm_timeout,
            )
        except DealApiError as exc:
            message = exc.message or ASSIGN_ERROR
        except Exception as exc:
            logger.warning("controller.assign_failed", deal_id=deal_id, error=str(exc))
            message = ASSIGN_ERROR
        finally:
            if self.owner_updating_id == deal_id:
                self.owner_updating_id = None

        if self._closed:
            return ChangeOutcome.IGNORED
        if message is None:
            return ChangeOutcome.CONFIRMED

        self._store.dispatch(previous)
        self._notifier.error(message)
        return ChangeOutcome.ROLLED_BACK

    # ── Members & reloads ───────────────────────────────────────────────

    def set_members(self, members: Iterable[Member]) -> None:
        """Replace the member directory and refresh owner names on cards."""
        self._members.replace(members)
        for deal in list(self._store.deals):
            member = self._members.get(deal.owner_id)
            if member is None:
                continue
            patch = DealPatch(
                owner_name=member.name,
                owner_initials=create_initials(member.name),
                owner_avatar_url=member.avatar_url,
            )
            self._store.dispatch(DealUpdated(deal_id=deal.id, patch=patch))

    def load(self, rows: Iterable[DealRow]) -> None:
        """Replace the board with freshly fetched rows."""
        self._store.dispatch(DealsReplaced(deals=[self.deal_from_row(row) for row in rows]))

    async def reload(self) -> None:
        """Fetch every deal in scope and replace the board."""
        try:
            rows = await self._api.list_deals()
        except Exception as exc:
            logger.warning("controller.reload_failed", error=str(exc))
            return
        if not self._closed:
            self.load(rows)

    # ── Realtime feed ───────────────────────────────────────────────────

    def handle_change_event(self, event: DealChangeEvent) -> bool:
        """Merge one feed event into the store. Returns True if the board changed."""
        if self._closed:
            return False

        deal_feed_events_total.labels(event_type=event.event_type.value).inc()

        if event.event_type == ChangeType.INSERT:
            assert event.new is not None
            return self._store.dispatch(DealInserted(deal=self.deal_from_row(event.new)))

        if event.event_type == ChangeType.UPDATE:
            assert event.new is not None
            patch = self.patch_from_row(event.new)
            if is_stale_remote(self._store.state, event.new.id, patch.updated_at):
                logger.info(
                    "controller.stale_update_dropped",
                    deal_id=event.new.id,
                    updated_at=patch.updated_at,
                )
                return False
            return self._store.dispatch(DealUpdated(deal_id=event.new.id, patch=patch))

        assert event.old is not None
        return self._store.dispatch(DealDeleted(deal_id=event.old.id))

    def deal_from_row(self, row: DealRow) -> Deal:
        """Build a board card from a full row, filling display fallbacks."""
        now = self._clock()
        member = self._members.get(row.user_id)
        contact_name = row.contact_name or NEW_RECORD
        owner_name = row.owner_name or (member.name if member else OWNER_FALLBACK)
        return Deal(
            id=row.id,
            title=row.title or "",
            company=row.company or UNKNOWN_COMPANY,
            value=row.value or 0.0,
            currency=row.currency or "TRY",
            stage=classify_stage(row.stage),
            contact_name=contact_name,
            contact_initials=create_initials(contact_name),
            owner_id=row.user_id,
            owner_name=owner_name,
            owner_initials=create_initials(owner_name),
            owner_avatar_url=row.owner_avatar_url or (member.avatar_url if member else None),
            created_at=row.created_at or row.updated_at or now,
            updated_at=row.updated_at or row.created_at or now,
        )

    def patch_from_row(self, row: DealRow) -> DealPatch:
        """Patch carrying only the columns present in a (partial) row."""
        fields: dict = {}
        if row.present("title"):
            fields["title"] = row.title
        if row.present("value"):
            fields["value"] = row.value
        if row.present("stage"):
            fields["stage"] = classify_stage(row.stage)
        if row.present("user_id"):
            member = self._members.get(row.user_id)
            owner_name = row.owner_name or (member.name if member else OWNER_FALLBACK)
            fields["owner_id"] = row.user_id
            fields["owner_name"] = owner_name
            fields["owner_initials"] = create_initials(owner_name)
            fields["owner_avatar_url"] = row.owner_avatar_url or (member.avatar_url if member else None)
        if row.present("updated_at"):
            fields["updated_at"] = row.updated_at
        return DealPatch(**fields)
