"""Tests for events.py — window stamping, thread hand-off, drop accounting."""

import asyncio
from unittest.mock import patch

import pytest

from updown_arb import events
from updown_arb.events import (
    EventType,
    consume,
    emit,
    get_drop_count,
    get_drop_counts,
    init_event_bus,
    shutdown_event_bus,
)

from conftest import WINDOW_START


@pytest.fixture(autouse=True)
def _reset_bus():
    yield
    shutdown_event_bus()


class TestEventBus:
    def test_emit_before_init_is_noop(self):
        shutdown_event_bus()
        emit(EventType.WINDOW_ROLLOVER, {"window": 1})
        assert get_drop_count() == 0
        with pytest.raises(RuntimeError):
            asyncio.run(consume())

    def test_emit_and_consume(self):
        async def scenario():
            init_event_bus()
            emit(EventType.SETTLEMENT_RESULT, {"ok": True}, market_id="0xcond1")
            return await consume()

        event = asyncio.run(scenario())
        assert event.type is EventType.SETTLEMENT_RESULT
        assert event.market_id == "0xcond1"
        assert event.data == {"ok": True}

    def test_event_carries_its_window(self):
        async def scenario():
            init_event_bus()
            emit(EventType.WIND_DOWN_PHASE, {"phase": "triggered"})
            return await consume()

        with patch("updown_arb.events.time.time", return_value=WINDOW_START + 123.4):
            event = asyncio.run(scenario())
        assert event.window_start == WINDOW_START
        assert event.timestamp == WINDOW_START + 123.4

    def test_emit_from_worker_thread_reaches_loop(self):
        async def scenario():
            init_event_bus()
            await asyncio.to_thread(emit, EventType.TRADE_REGISTERED, {"pair_id": "p1"}, "0xcond1")
            return await asyncio.wait_for(consume(), timeout=1)

        event = asyncio.run(scenario())
        assert event.type is EventType.TRADE_REGISTERED
        assert event.data == {"pair_id": "p1"}

    def test_full_queue_drops_per_type(self):
        async def scenario():
            with patch.object(events, "MAX_QUEUE_SIZE", 1):
                init_event_bus()
            emit(EventType.BALANCE_ACTION, {})
            emit(EventType.BALANCE_ACTION, {})
            emit(EventType.TRADE_SUBMITTED, {})

        asyncio.run(scenario())
        assert get_drop_count() == 2
        assert get_drop_counts() == {EventType.BALANCE_ACTION: 1, EventType.TRADE_SUBMITTED: 1}
