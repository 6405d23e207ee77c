"""Tenant-scoped realtime change feed for deals using Redis Streams.

The API publishes every insert/update/delete of a deal to the stream of
each scope that can see it: the deal's team and its owning user. Board
sessions subscribe to the stream of their own scope and hand decoded
events to the StageReconciliationController.

Stream key pattern: t:{scope_key}:deals:changes
(e.g. ``t:team:abc:deals:changes`` or ``t:user:42:deals:changes``)

Every board session needs every event, so subscriptions read with plain
XREAD from their own cursor instead of a consumer group.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Union

import redis.asyncio as aioredis
import structlog

from src.dealboard.core.monitoring import deal_changes_published_total
from src.dealboard.core.tenant import BoardScope
from src.dealboard.deals.schemas import DealChangeEvent, DealRow

logger = structlog.get_logger(__name__)

FeedHandler = Callable[[DealChangeEvent], Union[Any, Awaitable[Any]]]


def scopes_for_row(row: DealRow) -> list[BoardScope]:
    """Scopes whose boards show this row: its team and its owner."""
    scopes: list[BoardScope] = []
    if row.team_id:
        scopes.append(BoardScope(team_id=row.team_id))
    if row.user_id:
        scopes.append(BoardScope(user_id=row.user_id))
    return scopes


class DealChangeFeed:
    """Publish and read deal change events on scope-keyed Redis Streams.

    Args:
        redis: Async Redis client created with ``decode_responses=True``.
        maxlen: Approximate stream length kept by XADD trimming.
    """

    def __init__(self, redis: aioredis.Redis, maxlen: int = 1000) -> None:
        self._redis = redis
        self._maxlen = maxlen

    @staticmethod
    def stream_key(scope: BoardScope) -> str:
        return f"t:{scope.key}:deals:changes"

    async def publish(self, event: DealChangeEvent, scopes: Iterable[BoardScope]) -> list[str]:
        """Append ``event`` to the stream of every scope.

        Returns:
            Redis message IDs, one per scope.
        """
        data = event.to_stream_dict()
        message_ids: list[str] = []
        for scope in scopes:
            stream_key = self.stream_key(scope)
            message_id = await self._redis.xadd(
                stream_key,
                data,
                maxlen=self._maxlen,
                approximate=True,
            )
            message_ids.append(message_id)
            logger.debug(
                "feed.event_published",
                stream=stream_key,
                event_type=event.event_type.value,
                deal_id=event.record_id,
                message_id=message_id,
            )

        if message_ids:
            deal_changes_published_total.labels(event_type=event.event_type.value).inc()
        return message_ids

    async def read(
        self,
        scope: BoardScope,
        last_id: str,
        count: int = 50,
        block: int | None = 5000,
    ) -> list[tuple[str, dict[str, str]]]:
        """Entries after ``last_id`` on the scope's stream (may block).

        Returns:
            List of ``(message_id, data)`` tuples in stream order.
        """
        stream_key = self.stream_key(scope)
        response = await self._redis.xread({stream_key: last_id}, count=count, block=block)
        entries: list[tuple[str, dict[str, str]]] = []
        for _stream_key, messages in response or []:
            entries.extend(messages)
        return entries


class FeedSubscription:
    """Reads one scope's stream and dispatches decoded events to a handler.

    Malformed entries and handler failures are logged and skipped; the loop
    only ends on stop() or cancellation.

    Args:
        feed: DealChangeFeed to read from.
        scope: Board scope whose stream to follow.
        handler: Sync or async callable receiving each DealChangeEvent.
        block_ms: XREAD block time per poll.
        start_id: Stream cursor to start after; defaults to "now" so only
            changes made after subscribing are delivered.
    """

    def __init__(
        self,
        feed: DealChangeFeed,
        scope: BoardScope,
        handler: FeedHandler,
        block_ms: int = 5000,
        start_id: str | None = None,
    ) -> None:
        self._feed = feed
        self._scope = scope
        self._handler = handler
        self._block_ms = block_ms
        self._last_id = start_id or f"{int(time.time() * 1000)}-0"
        self._running = False

    @property
    def last_id(self) -> str:
        return self._last_id

    def stop(self) -> None:
        self._running = False

    async def run(self) -> None:
        """Poll until stopped."""
        self._running = True
        logger.info("feed.subscription_started", scope=self._scope.key, last_id=self._last_id)
        try:
            while self._running:
                await self.poll_once()
        except asyncio.CancelledError:
            logger.info("feed.subscription_cancelled", scope=self._scope.key)
            raise
        finally:
            self._running = False

    async def poll_once(self) -> int:
        """Read one batch and dispatch it. Returns the number of events handled."""
        entries = await self._feed.read(self._scope, self._last_id, block=self._block_ms)
        handled = 0
        for message_id, data in entries:
            self._last_id = message_id
            try:
                event = DealChangeEvent.from_stream_dict(data)
            except (KeyError, ValueError) as exc:
                logger.warning(
                    "feed.malformed_entry",
                    scope=self._scope.key,
                    message_id=message_id,
                    error=str(exc),
                )
                continue

            try:
                result = self._handler(event)
                if inspect.isawaitable(result):
                    await result
                handled += 1
            except Exception:
                logger.error(
                    "feed.handler_failed",
                    scope=self._scope.key,
                    message_id=message_id,
                    event_type=event.event_type.value,
                    exc_info=True,
                )
        return handled
