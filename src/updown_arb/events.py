"""Event bus for state transitions (trades, recovery, settlement, wind-down).

Every event is stamped with the trading window it happened in. Emitters never
block: SDK calls run under asyncio.to_thread, so an emit from a worker thread
is handed to the loop with call_soon_threadsafe. A full queue drops the event
and counts it per type; the dispatcher in bot.py reports the tally on exit.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from updown_arb.window import current_window_start

log = logging.getLogger("ua.events")

MAX_QUEUE_SIZE = 10_000
DROP_WARN_EVERY = 100


class EventType(str, Enum):
    TRADE_SUBMITTED = "trade_submitted"
    TRADE_REGISTERED = "trade_registered"
    RECOVERY_DECISION = "recovery_decision"
    SETTLEMENT_RESULT = "settlement_result"
    BALANCE_ACTION = "balance_action"
    WIND_DOWN_PHASE = "wind_down_phase"
    WINDOW_ROLLOVER = "window_rollover"


@dataclass(frozen=True)
class Event:
    type: EventType
    timestamp: float
    window_start: int
    data: dict[str, Any] = field(default_factory=dict)
    market_id: str | None = None


class _Bus:
    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int):
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.loop_thread = threading.get_ident()
        self.drops: Counter = Counter()

    def put(self, event: Event) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.drops[event.type] += 1
            total = sum(self.drops.values())
            if total % DROP_WARN_EVERY == 1:
                log.warning("EVENT_BUS │ queue full, dropped %d events total (last=%s)",
                            total, event.type.value)


_bus: _Bus | None = None


def init_event_bus() -> asyncio.Queue:
    """Bind the bus to the running loop. Call once from inside it."""
    global _bus
    _bus = _Bus(asyncio.get_running_loop(), MAX_QUEUE_SIZE)
    log.info("EVENT_BUS │ initialized (maxsize=%d)", MAX_QUEUE_SIZE)
    return _bus.queue


def shutdown_event_bus() -> None:
    global _bus
    _bus = None


def emit(event_type: EventType, data: dict[str, Any], market_id: str | None = None) -> None:
    """Non-blocking emit, safe from the loop or a worker thread. No-op before init."""
    bus = _bus
    if bus is None:
        return
    now = time.time()
    event = Event(
        type=event_type,
        timestamp=now,
        window_start=current_window_start(now),
        data=data,
        market_id=market_id,
    )
    if threading.get_ident() == bus.loop_thread:
        bus.put(event)
        return
    try:
        bus.loop.call_soon_threadsafe(bus.put, event)
    except RuntimeError:
        # loop already closed during shutdown
        bus.drops[event_type] += 1


async def consume() -> Event:
    """Next event; waits until one is available."""
    if _bus is None:
        raise RuntimeError("Event bus not initialized, call init_event_bus() first")
    return await _bus.queue.get()


def get_drop_count() -> int:
    return sum(_bus.drops.values()) if _bus is not None else 0


def get_drop_counts() -> dict[EventType, int]:
    """Dropped events per type since init."""
    return dict(_bus.drops) if _bus is not None else {}
