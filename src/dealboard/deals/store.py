"""Single state container for the deal board.

Both the drag lifecycle and the realtime feed route their mutations through
one DealStore. Every mutation is an action reduced by the pure
``reduce_deals`` function; actions are tagged with their origin:

- local_optimistic: applied by this client before the server has agreed
  (stage moves, rollbacks, owner changes)
- remote_confirmed: authoritative state from the server (confirmation
  responses, feed insert/update/delete, full reloads)

While a deal has a pending optimistic stage move, remote updates stamped
earlier than the optimistic timestamp are dropped, and remote updates with
no timestamp cannot change its stage.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import ClassVar, Union

import structlog
from pydantic import BaseModel, Field

from src.dealboard.deals.kanban import apply_optimistic_stage
from src.dealboard.deals.schemas import Deal, DealPatch
from src.dealboard.deals.stages import Stage

logger = structlog.get_logger(__name__)


class ActionOrigin(str, Enum):
    LOCAL_OPTIMISTIC = "local_optimistic"
    REMOTE_CONFIRMED = "remote_confirmed"


# ── Actions ─────────────────────────────────────────────────────────────────


class StageMoved(BaseModel):
    """Optimistic stage change applied on drop."""

    origin: ClassVar[ActionOrigin] = ActionOrigin.LOCAL_OPTIMISTIC

    deal_id: str
    stage: Stage
    updated_at: datetime


class StageReverted(BaseModel):
    """Restore a deal to its pre-drag snapshot after a failed confirmation."""

    origin: ClassVar[ActionOrigin] = ActionOrigin.LOCAL_OPTIMISTIC

    deal_id: str
    stage: Stage
    updated_at: datetime


class OwnerChanged(BaseModel):
    """Optimistic owner assignment (or its rollback)."""

    origin: ClassVar[ActionOrigin] = ActionOrigin.LOCAL_OPTIMISTIC

    deal_id: str
    owner_id: str | None
    owner_name: str
    owner_initials: str
    owner_avatar_url: str | None = None


class StageConfirmed(BaseModel):
    """Server accepted a stage move; adopt its timestamp when it sent one."""

    origin: ClassVar[ActionOrigin] = ActionOrigin.REMOTE_CONFIRMED

    deal_id: str
    updated_at: datetime | None = None


class DealInserted(BaseModel):
    origin: ClassVar[ActionOrigin] = ActionOrigin.REMOTE_CONFIRMED

    deal: Deal


class DealUpdated(BaseModel):
    origin: ClassVar[ActionOrigin] = ActionOrigin.REMOTE_CONFIRMED

    deal_id: str
    patch: DealPatch


class DealDeleted(BaseModel):
    origin: ClassVar[ActionOrigin] = ActionOrigin.REMOTE_CONFIRMED

    deal_id: str


class DealsReplaced(BaseModel):
    """Full reload of the board (initial fetch or resubscribe)."""

    origin: ClassVar[ActionOrigin] = ActionOrigin.REMOTE_CONFIRMED

    deals: list[Deal] = Field(default_factory=list)


DealAction = Union[
    StageMoved,
    StageReverted,
    OwnerChanged,
    StageConfirmed,
    DealInserted,
    DealUpdated,
    DealDeleted,
    DealsReplaced,
]


# ── Reducer ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class BoardState:
    """Deal list plus optimistic timestamps of in-flight stage moves."""

    deals: list[Deal] = field(default_factory=list)
    pending: dict[str, datetime] = field(default_factory=dict)


def is_stale_remote(state: BoardState, deal_id: str, updated_at: datetime | None) -> bool:
    """True if a remote update is older than this deal's pending optimistic move."""
    pending_at = state.pending.get(deal_id)
    return pending_at is not None and updated_at is not None and updated_at < pending_at


def _without(pending: dict[str, datetime], deal_id: str) -> dict[str, datetime]:
    if deal_id not in pending:
        return pending
    return {key: value for key, value in pending.items() if key != deal_id}


def _replace_fields(state: BoardState, deal_id: str, changes: dict) -> list[Deal]:
    """Deal list with ``changes`` applied to ``deal_id``; same list if nothing differs."""
    for index, deal in enumerate(state.deals):
        if deal.id != deal_id:
            continue
        if all(getattr(deal, key) == value for key, value in changes.items()):
            return state.deals
        deals = list(state.deals)
        deals[index] = deal.model_copy(update=changes)
        return deals
    return state.deals


def reduce_deals(state: BoardState, action: DealAction) -> BoardState:
    """Apply one action and return the next state.

    Returns ``state`` itself when the action changes nothing.
    """
    if isinstance(action, StageMoved):
        deals = apply_optimistic_stage(state.deals, action.deal_id, action.stage, action.updated_at)
        if deals is state.deals:
            return state
        return BoardState(deals=deals, pending={**state.pending, action.deal_id: action.updated_at})

    if isinstance(action, StageReverted):
        deals = _replace_fields(
            state, action.deal_id, {"stage": action.stage, "updated_at": action.updated_at}
        )
        pending = _without(state.pending, action.deal_id)
        if deals is state.deals and pending is state.pending:
            return state
        return BoardState(deals=deals, pending=pending)

    if isinstance(action, OwnerChanged):
        deals = _replace_fields(
            state,
            action.deal_id,
            {
                "owner_id": action.owner_id,
                "owner_name": action.owner_name,
                "owner_initials": action.owner_initials,
                "owner_avatar_url": action.owner_avatar_url,
            },
        )
        if deals is state.deals:
            return state
        return BoardState(deals=deals, pending=state.pending)

    if isinstance(action, StageConfirmed):
        deals = state.deals
        if action.updated_at is not None:
            deals = _replace_fields(state, action.deal_id, {"updated_at": action.updated_at})
        pending = _without(state.pending, action.deal_id)
        if deals is state.deals and pending is state.pending:
            return state
        return BoardState(deals=deals, pending=pending)

    if isinstance(action, DealInserted):
        if any(deal.id == action.deal.id for deal in state.deals):
            return state
        return BoardState(deals=[*state.deals, action.deal], pending=state.pending)

    if isinstance(action, DealUpdated):
        if is_stale_remote(state, action.deal_id, action.patch.updated_at):
            return state
        changes = action.patch.changes()
        if action.deal_id in state.pending and action.patch.updated_at is None:
            changes.pop("stage", None)
        if not changes:
            return state
        deals = _replace_fields(state, action.deal_id, changes)
        if deals is state.deals:
            return state
        return BoardState(deals=deals, pending=state.pending)

    if isinstance(action, DealDeleted):
        deals = [deal for deal in state.deals if deal.id != action.deal_id]
        if len(deals) == len(state.deals):
            return state
        return BoardState(deals=deals, pending=_without(state.pending, action.deal_id))

    if isinstance(action, DealsReplaced):
        local = {deal.id: deal for deal in state.deals}
        deals: list[Deal] = []
        pending: dict[str, datetime] = {}
        for deal in action.deals:
            pending_at = state.pending.get(deal.id)
            if pending_at is not None:
                pending[deal.id] = pending_at
                current = local.get(deal.id)
                if current is not None and is_stale_remote(state, deal.id, deal.updated_at):
                    # Older server row: the in-flight move keeps its column.
                    deal = deal.model_copy(
                        update={"stage": current.stage, "updated_at": current.updated_at}
                    )
            deals.append(deal)
        return BoardState(deals=deals, pending=pending)

    msg = f"Unknown deal action: {type(action).__name__}"
    raise TypeError(msg)


# ── Store ───────────────────────────────────────────────────────────────────


Listener = Callable[[list[Deal]], None]


class DealStore:
    """Owns the board's deal list and notifies listeners on change.

    Args:
        deals: Initial deal list (typically the server-rendered snapshot).
    """

    def __init__(self, deals: Iterable[Deal] = ()) -> None:
        self._state = BoardState(deals=list(deals))
        self._listeners: list[Listener] = []

    @property
    def state(self) -> BoardState:
        return self._state

    @property
    def deals(self) -> list[Deal]:
        return self._state.deals

    def get(self, deal_id: str) -> Deal | None:
        return next((deal for deal in self._state.deals if deal.id == deal_id), None)

    def is_pending(self, deal_id: str) -> bool:
        return deal_id in self._state.pending

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def dispatch(self, action: DealAction) -> bool:
        """Reduce ``action`` into the store. Returns True if the deal list changed."""
        previous = self._state
        self._state = reduce_deals(previous, action)

        if self._state is previous:
            logger.debug(
                "deal_store.action_noop",
                action=type(action).__name__,
                origin=action.origin.value,
            )
            return False

        if self._state.deals is previous.deals:
            return False

        for listener in list(self._listeners):
            try:
                listener(self._state.deals)
            except Exception:
                logger.error(
                    "deal_store.listener_failed",
                    action=type(action).__name__,
                    exc_info=True,
                )
        return True
