"""Window clock: 5-minute trading windows aligned to the epoch."""

from __future__ import annotations

WINDOW_SECS = 300


def current_window_start(now: float) -> int:
    """Start (epoch seconds) of the window containing *now*."""
    return (int(now) // WINDOW_SECS) * WINDOW_SECS


def next_window_start(now: float) -> int:
    return current_window_start(now) + WINDOW_SECS


def seconds_until_window_end(now: float) -> float:
    return next_window_start(now) - now


def wait_before_next_window(now: float, advance_secs: float = 0) -> float:
    """Seconds to sleep so we wake *advance_secs* before the next boundary (never negative)."""
    return max(0.0, next_window_start(now) - now - advance_secs)
