"""Tests for window.py — boundary math."""

from updown_arb.window import (
    WINDOW_SECS,
    current_window_start,
    next_window_start,
    seconds_until_window_end,
    wait_before_next_window,
)

from conftest import WINDOW_START


class TestWindowClock:
    def test_current_window_start_floors_to_boundary(self):
        assert current_window_start(WINDOW_START + 123.5) == WINDOW_START

    def test_boundary_belongs_to_new_window(self):
        assert current_window_start(WINDOW_START) == WINDOW_START
        assert current_window_start(WINDOW_START - 0.5) == WINDOW_START - WINDOW_SECS

    def test_next_window_start(self):
        assert next_window_start(WINDOW_START + 10) == WINDOW_START + 300

    def test_seconds_until_window_end(self):
        assert seconds_until_window_end(WINDOW_START + 23.5) == 276.5


class TestWaitBeforeNextWindow:
    def test_wakes_advance_seconds_early(self):
        assert wait_before_next_window(WINDOW_START, advance_secs=5) == 295

    def test_never_negative(self):
        assert wait_before_next_window(WINDOW_START + 298, advance_secs=5) == 0.0

    def test_exactly_at_advance_point(self):
        assert wait_before_next_window(WINDOW_START + 295, advance_secs=5) == 0.0
