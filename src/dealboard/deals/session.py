"""Board session wiring.

A BoardSession is one open deal board: it owns the DealStore and hands the
same store to the StageReconciliationController, which both the drag
sensor and the realtime feed subscription feed into. Collaborators are
built from Settings unless injected.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

import structlog

from src.dealboard.config import Settings, get_settings
from src.dealboard.core.tenant import BoardScope
from src.dealboard.deals.client import DealApiClient
from src.dealboard.deals.controller import (
    ChangeOutcome,
    DealApi,
    MemberDirectory,
    Notifier,
    StageReconciliationController,
)
from src.dealboard.deals.drag import DragSensor
from src.dealboard.deals.feed import DealChangeFeed, FeedSubscription
from src.dealboard.deals.schemas import Deal, Member
from src.dealboard.deals.store import DealStore

logger = structlog.get_logger(__name__)


class BoardSession:
    """One scope's board: store, controller, drag sensor and feed subscription.

    Args:
        scope: Team or user scope of the board.
        feed: Change feed to subscribe to; None runs without realtime updates.
        deals: Initial cards (typically server-rendered).
        members: Team members for owner names.
        api: Confirmation endpoints; defaults to a DealApiClient on
            ``DEAL_API_BASE_URL``.
        notifier: Error toast sink.
        settings: Overrides get_settings().
    """

    def __init__(
        self,
        scope: BoardScope,
        feed: DealChangeFeed | None = None,
        deals: Iterable[Deal] = (),
        members: Iterable[Member] = (),
        api: DealApi | None = None,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.scope = scope
        self.store = DealStore(deals)
        self.sensor = DragSensor(activation_distance=settings.DRAG_ACTIVATION_DISTANCE)
        self.controller = StageReconciliationController(
            self.store,
            api or DealApiClient(settings.DEAL_API_BASE_URL, scope),
            notifier=notifier,
            members=MemberDirectory(members),
            confirm_timeout=settings.STAGE_CONFIRM_TIMEOUT_SECONDS,
        )
        self.subscription: FeedSubscription | None = None
        if feed is not None:
            self.subscription = FeedSubscription(
                feed,
                scope,
                self.controller.handle_change_event,
                block_ms=settings.FEED_BLOCK_MS,
            )
        self._feed_task: asyncio.Task | None = None

    async def start(self, reload: bool = True) -> None:
        """Subscribe to the feed, then (optionally) fetch the current board.

        Subscribing first means changes committed during the fetch are
        still delivered; duplicates are absorbed by the store.
        """
        if self.subscription is not None and self._feed_task is None:
            self._feed_task = asyncio.create_task(
                self.subscription.run(), name=f"deal_feed_{self.scope.key}"
            )
        if reload:
            await self.controller.reload()
        logger.info("board_session.started", scope=self.scope.key, deals=len(self.store.deals))

    async def drop(self, over_id: str | None) -> ChangeOutcome:
        """Release the pointer over ``over_id`` and run the resulting stage change."""
        event = self.sensor.pointer_up(over_id)
        if event is None:
            return ChangeOutcome.NOOP
        return await self.controller.handle_drag_end(event)

    async def close(self) -> None:
        """Stop the feed and tear down the controller."""
        self.controller.close()
        if self.subscription is not None:
            self.subscription.stop()
        if self._feed_task is not None and not self._feed_task.done():
            self._feed_task.cancel()
            try:
                await self._feed_task
            except asyncio.CancelledError:
                pass
        self._feed_task = None
        logger.info("board_session.closed", scope=self.scope.key)
