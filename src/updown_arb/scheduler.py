"""Market scheduler: resolve the live markets for the current window.

Markets can appear a few seconds after the window boundary, so an empty
lookup is retried on a short interval. After the retry budget runs out we
sleep until just before the next boundary and retry there indefinitely.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from updown_arb.models import MarketInfo
from updown_arb.window import current_window_start, next_window_start, wait_before_next_window

log = logging.getLogger("ua.scheduler")

RETRY_INTERVAL_S = 2.0
RETRY_BUDGET_S = 90.0

LookupFn = Callable[[tuple[str, ...], int], list[MarketInfo]]


class MarketScheduler:
    def __init__(
        self,
        lookup: LookupFn,
        symbols: tuple[str, ...],
        refresh_advance_secs: float = 5,
        clock: Callable[[], float] = time.time,
        retry_interval: float = RETRY_INTERVAL_S,
        retry_budget: float = RETRY_BUDGET_S,
    ):
        self._lookup = lookup
        self._symbols = symbols
        self._advance = refresh_advance_secs
        self._clock = clock
        self._retry_interval = retry_interval
        self._retry_budget = retry_budget

    async def _try(self, window_ts: int) -> list[MarketInfo]:
        try:
            return await asyncio.to_thread(self._lookup, self._symbols, window_ts)
        except Exception as e:
            log.warning("MARKET_LOOKUP_ERROR │ window=%d │ %s", window_ts, e)
            return []

    async def get_markets(self) -> list[MarketInfo]:
        """Markets of the current window. Only returns once something is found."""
        window_ts = current_window_start(self._clock())
        waited = 0.0
        while waited < self._retry_budget:
            markets = await self._try(window_ts)
            if markets:
                return markets
            log.info("MARKETS_PENDING │ window=%d │ retry in %.0fs", window_ts, self._retry_interval)
            await asyncio.sleep(self._retry_interval)
            waited += self._retry_interval

        log.warning("MARKETS_MISSING │ window=%d │ waiting for next window", window_ts)
        return await self.wait_for_next_window()

    async def wait_for_next_window(self) -> list[MarketInfo]:
        now = self._clock()
        window_ts = next_window_start(now)
        delay = wait_before_next_window(now, self._advance)
        log.info("WAIT_NEXT_WINDOW │ window=%d │ sleeping %.0fs", window_ts, delay)
        await asyncio.sleep(delay)
        while True:
            # Follow the clock if that window also passes without markets.
            window_ts = max(window_ts, current_window_start(self._clock()))
            markets = await self._try(window_ts)
            if markets:
                return markets
            await asyncio.sleep(self._retry_interval)
