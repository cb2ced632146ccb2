"""End-of-window unwind: cancel, merge, then dump what is left at a floor price."""

from __future__ import annotations

import asyncio
import logging
import math
import threading
from decimal import ROUND_DOWN, Decimal
from typing import Callable, Iterable, Optional

from updown_arb.events import EventType, emit
from updown_arb.merge import DELAY_BETWEEN_MERGES_S, RATE_LIMIT_BACKOFF_S, settle_serially
from updown_arb.models import C_RESET, C_YELLOW, MIN_TRADABLE, ZERO, Position, SellResult, short_id
from updown_arb.tracker import PositionTracker
from updown_arb.window import WINDOW_SECS

log = logging.getLogger("ua.wind_down")

DELAY_AFTER_CANCEL_S = 10.0
DELAY_AFTER_MERGE_S = 30.0


def floor_size(size: Decimal) -> Decimal:
    """Floor to 2 decimals, the CLOB size granularity."""
    return size.quantize(Decimal("0.01"), rounding=ROUND_DOWN)


class WindDownSequencer:
    def __init__(
        self,
        tracker: PositionTracker,
        active: threading.Event,
        cancel_all: Callable[[], object],
        get_positions: Callable[[], Iterable[Position]],
        sell_at_price: Callable[[str, Decimal, Decimal], SellResult],
        settle: Optional[Callable[[str], str]],
        minutes_before_end: int,
        sell_price: Decimal = Decimal("0.01"),
        delay_after_cancel: float = DELAY_AFTER_CANCEL_S,
        delay_between_merges: float = DELAY_BETWEEN_MERGES_S,
        delay_after_merge: float = DELAY_AFTER_MERGE_S,
        rate_limit_backoff: float = RATE_LIMIT_BACKOFF_S,
    ):
        self._tracker = tracker
        self._active = active
        self._cancel_all = cancel_all
        self._get_positions = get_positions
        self._sell_at_price = sell_at_price
        self._settle = settle
        self._threshold_secs = minutes_before_end * 60
        self._sell_price = sell_price
        self._delay_after_cancel = delay_after_cancel
        self._delay_between_merges = delay_between_merges
        self._delay_after_merge = delay_after_merge
        self._rate_limit_backoff = rate_limit_backoff
        self._triggered_window: Optional[int] = None

    @property
    def enabled(self) -> bool:
        return self._threshold_secs > 0

    def maybe_trigger(self, now: float, window_start: int) -> bool:
        """True exactly once per window, when the remaining time drops to the threshold.

        Seconds are compared directly; whole minutes would truncate and could
        skip the check entirely inside a 5-minute window.
        """
        if not self.enabled or self._triggered_window == window_start:
            return False
        seconds_left = math.floor(window_start + WINDOW_SECS - now)
        if seconds_left > self._threshold_secs:
            return False
        self._triggered_window = window_start
        self._active.set()
        log.info("%sWIND_DOWN_TRIGGER │ window=%d │ %ds left%s",
                 C_YELLOW, window_start, seconds_left, C_RESET)
        emit(EventType.WIND_DOWN_PHASE, {"phase": "triggered", "seconds_left": seconds_left})
        return True

    async def run(self) -> None:
        """Unwind sequence. Every step logs its failure and moves on."""
        try:
            await self._cancel_orders()
            await asyncio.sleep(self._delay_after_cancel)
            merged = await self._merge()
            if merged:
                await asyncio.sleep(self._delay_after_merge)
            await self._sell_leftovers()
            log.info("WIND_DOWN_DONE │ holding until window end")
            emit(EventType.WIND_DOWN_PHASE, {"phase": "done", "merged": merged})
        finally:
            self._active.clear()

    async def _cancel_orders(self) -> None:
        try:
            await asyncio.to_thread(self._cancel_all)
            log.info("WIND_DOWN_CANCEL │ all open orders cancelled")
            emit(EventType.WIND_DOWN_PHASE, {"phase": "cancelled"})
        except Exception as e:
            log.warning("WIND_DOWN_CANCEL_FAIL │ %s │ continuing", e)

    async def _merge(self) -> int:
        if self._settle is None:
            log.warning("WIND_DOWN_MERGE_SKIP │ no proxy wallet configured")
            return 0
        try:
            positions = list(await asyncio.to_thread(self._get_positions))
        except Exception as e:
            log.warning("WIND_DOWN_POSITIONS_FAIL │ %s │ skipping merge", e)
            return 0
        merged = await settle_serially(
            self._settle, positions, self._tracker,
            delay_between=self._delay_between_merges,
            rate_limit_backoff=self._rate_limit_backoff,
        )
        emit(EventType.WIND_DOWN_PHASE, {"phase": "merged", "count": merged})
        return merged

    async def _sell_leftovers(self) -> int:
        try:
            positions = list(await asyncio.to_thread(self._get_positions))
        except Exception as e:
            log.warning("WIND_DOWN_POSITIONS_FAIL │ %s │ skipping sells", e)
            return 0

        sold = 0
        for pos in positions:
            if pos.size <= ZERO:
                continue
            size = floor_size(pos.size)
            if size < MIN_TRADABLE:
                log.debug("WIND_DOWN_DUST %s │ size=%s", short_id(pos.asset), pos.size)
                continue
            try:
                result = await asyncio.to_thread(self._sell_at_price, pos.asset, self._sell_price, size)
            except Exception as e:
                log.warning("WIND_DOWN_SELL_FAIL %s │ size=%s │ %s", short_id(pos.asset), size, e)
                continue
            sold += 1
            filled = result.filled
            if filled > ZERO:
                # Average-cost release, priced off the pre-sell size.
                self._tracker.update_exposure_cost(pos.asset, ZERO, -filled)
                self._tracker.update_position(pos.asset, -filled)
            log.info("WIND_DOWN_SELL %s │ %s @ %s │ filled=%s",
                     short_id(pos.asset), size, self._sell_price, filled)
        emit(EventType.WIND_DOWN_PHASE, {"phase": "sold", "count": sold})
        return sold
