"""Pointer sensor for board cards.

Turns raw pointer events into drag start/end notifications. A press only
becomes a drag after the pointer travels past the activation distance, so
clicks on a card never move it.
"""

from __future__ import annotations

import math
from enum import Enum

from pydantic import BaseModel


class DragState(str, Enum):
    IDLE = "idle"
    PRESSED = "pressed"
    DRAGGING = "dragging"


class DragEndEvent(BaseModel):
    """Drop notification: the dragged token and the token under the pointer."""

    active_id: str
    over_id: str | None = None


class DragSensor:
    """Tracks one pointer gesture at a time.

    Args:
        activation_distance: Pointer travel in pixels required before a
            press turns into a drag.
    """

    def __init__(self, activation_distance: float = 8.0) -> None:
        self._activation_distance = activation_distance
        self._state = DragState.IDLE
        self._active_id: str | None = None
        self._origin: tuple[float, float] = (0.0, 0.0)

    @property
    def state(self) -> DragState:
        return self._state

    @property
    def active_id(self) -> str | None:
        return self._active_id if self._state == DragState.DRAGGING else None

    def pointer_down(self, active_id: str, x: float, y: float) -> None:
        self._state = DragState.PRESSED
        self._active_id = active_id
        self._origin = (x, y)

    def pointer_move(self, x: float, y: float) -> bool:
        """Returns True on the move that activates the drag."""
        if self._state != DragState.PRESSED:
            return False
        distance = math.hypot(x - self._origin[0], y - self._origin[1])
        if distance < self._activation_distance:
            return False
        self._state = DragState.DRAGGING
        return True

    def pointer_up(self, over_id: str | None) -> DragEndEvent | None:
        """Release the pointer; a DragEndEvent only if a drag was active."""
        event = None
        if self._state == DragState.DRAGGING and self._active_id is not None:
            event = DragEndEvent(active_id=self._active_id, over_id=over_id)
        self.cancel()
        return event

    def cancel(self) -> None:
        self._state = DragState.IDLE
        self._active_id = None
