"""Tests for the pointer DragSensor."""

from __future__ import annotations

from src.dealboard.deals.drag import DragSensor, DragState


class TestDragSensor:
    def test_click_without_travel_is_not_a_drag(self):
        sensor = DragSensor(activation_distance=8.0)
        sensor.pointer_down("deal-d1", 10, 10)
        assert sensor.pointer_move(13, 14) is False
        assert sensor.pointer_up("stage-won") is None
        assert sensor.state == DragState.IDLE

    def test_activation_after_threshold(self):
        sensor = DragSensor(activation_distance=8.0)
        sensor.pointer_down("deal-d1", 0, 0)

        assert sensor.pointer_move(0, 8) is True
        assert sensor.state == DragState.DRAGGING
        assert sensor.active_id == "deal-d1"
        assert sensor.pointer_move(0, 50) is False

        event = sensor.pointer_up("stage-won")
        assert event.active_id == "deal-d1"
        assert event.over_id == "stage-won"
        assert sensor.active_id is None

    def test_release_outside_any_target(self):
        sensor = DragSensor()
        sensor.pointer_down("deal-d1", 0, 0)
        sensor.pointer_move(100, 0)
        event = sensor.pointer_up(None)
        assert event.over_id is None

    def test_cancel(self):
        sensor = DragSensor()
        sensor.pointer_down("deal-d1", 0, 0)
        sensor.pointer_move(100, 0)
        sensor.cancel()
        assert sensor.pointer_up("stage-won") is None

    def test_move_without_press(self):
        assert DragSensor().pointer_move(100, 100) is False
