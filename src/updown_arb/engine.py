"""Main orchestrator: one loop per 5-minute window.

Each window: resolve markets, reset exposure, subscribe to their books and
multiplex the book stream with a 1s rollover tick and the balance timer.
Trades, wind-down, hedge exits and balancing run as background tasks that
report back only through the position tracker and the logs.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from decimal import Decimal
from typing import AsyncIterator, Callable, Iterable, Optional

from updown_arb.arbitrage import ArbitrageDetector
from updown_arb.balancer import PositionBalancer
from updown_arb.clob import DIR_DOWN, DIR_FLAT, DIR_UP
from updown_arb.config import ArbConfig
from updown_arb.events import EventType, emit
from updown_arb.hedge import HedgeMonitor, fee_adjusted_size
from updown_arb.merge import MergeScheduler
from updown_arb.models import (
    C_GREEN,
    C_RED,
    C_RESET,
    C_YELLOW,
    ONE,
    ZERO,
    ArbitrageOpportunity,
    BookSnapshot,
    ManualIntervention,
    MarketInfo,
    MonitorForExit,
    NoAction,
    OrderPair,
    RecoveryAction,
    SellExcess,
)
from updown_arb.orderbook import OrderBookPairer
from updown_arb.risk_manager import RiskManager
from updown_arb.scheduler import MarketScheduler
from updown_arb.tracker import PositionTracker
from updown_arb.wind_down import WindDownSequencer
from updown_arb.window import current_window_start, seconds_until_window_end

log = logging.getLogger("ua.engine")

TICK_INTERVAL_S = 1.0
RESUBSCRIBE_DELAY_S = 1.0

SubscribeFn = Callable[[Iterable[str]], AsyncIterator[BookSnapshot]]


def direction(current: Decimal, previous: Optional[Decimal]) -> str:
    if previous is None or current == previous:
        return DIR_FLAT
    return DIR_UP if current > previous else DIR_DOWN


class Orchestrator:
    def __init__(
        self,
        cfg: ArbConfig,
        scheduler: MarketScheduler,
        subscribe: SubscribeFn,
        executor,
        tracker: PositionTracker,
        risk: RiskManager,
        balancer: PositionBalancer,
        wind_down: WindDownSequencer,
        wind_down_active: threading.Event,
        merge_scheduler: Optional[MergeScheduler] = None,
        hedge: Optional[HedgeMonitor] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._cfg = cfg
        self._scheduler = scheduler
        self._subscribe = subscribe
        self._executor = executor
        self._tracker = tracker
        self._risk = risk
        self._balancer = balancer
        self._wind_down = wind_down
        self._wind_down_active = wind_down_active
        self._merge_scheduler = merge_scheduler
        self._hedge = hedge
        self._clock = clock

        self._detector = ArbitrageDetector(
            cfg.arbitrage_execution_spread,
            cfg.max_order_size_usdc,
            min_profit=cfg.min_profit_threshold,
        )
        self._pairer = OrderBookPairer()
        self._markets: dict[str, MarketInfo] = {}
        self._last_prices: dict[str, tuple[Decimal, Decimal]] = {}
        self._exposure_window: Optional[int] = None
        self._trade_lock = asyncio.Lock()
        self._last_trade_at: Optional[float] = None
        self._background: set[asyncio.Task] = set()

    # -----------------------------------------------------------------
    # Background tasks
    # -----------------------------------------------------------------

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(lambda t: self._on_task_done(t, name))
        return task

    def _on_task_done(self, task: asyncio.Task, name: str) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("%sTASK_ERROR %s │ %s%s", C_RED, name, exc, C_RESET)

    async def _position_sync_loop(self) -> None:
        interval = self._cfg.position_sync_interval_secs
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(self._tracker.sync_from_api)
            except Exception as e:
                log.warning("POSITION_SYNC_FAIL │ %s", e)

    def start_background_tasks(self) -> None:
        if self._merge_scheduler is not None and self._cfg.merge_interval_minutes > 0:
            self._spawn(self._merge_scheduler.run(), "merge")
            log.info("MERGE_TASK │ every %d min", self._cfg.merge_interval_minutes)
        if self._cfg.position_sync_interval_secs > 0:
            self._spawn(self._position_sync_loop(), "position_sync")
            log.info("POSITION_SYNC │ every %ds", self._cfg.position_sync_interval_secs)

    # -----------------------------------------------------------------
    # Main loop
    # -----------------------------------------------------------------

    async def run(self) -> None:
        self.start_background_tasks()
        while True:
            try:
                await self.run_window()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error("%sWINDOW_ERROR │ %s%s", C_RED, e, C_RESET)
                await asyncio.sleep(RESUBSCRIBE_DELAY_S)

    def load_markets(self, markets: list[MarketInfo]) -> list[str]:
        """(Re)build the window state. Books and price hints are always dropped;
        exposure resets only on the first build of a new window, so a stream
        reconnect inside the window keeps what was already charged.
        """
        window_start = current_window_start(self._clock())
        if self._exposure_window != window_start:
            self._tracker.reset_exposure()
            self._exposure_window = window_start
        self._pairer.clear()
        self._markets = {m.market_id: m for m in markets}
        self._last_prices.clear()
        return self._pairer.register_markets(markets)

    async def wait_background(self) -> None:
        """Wait for trade, hedge and balance tasks spawned so far."""
        tasks = [t for t in self._background if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def run_window(self) -> None:
        """Trade one window until rollover or until the book stream breaks."""
        markets = await self._scheduler.get_markets()
        token_ids = self.load_markets(markets)

        try:
            stream = self._subscribe(token_ids)
        except Exception as e:
            log.error("BOOK_SUBSCRIBE_FAIL │ %s", e)
            await asyncio.sleep(RESUBSCRIBE_DELAY_S)
            return

        window_start = current_window_start(self._clock())
        log.info("WINDOW_START %d │ %.0fs left │ markets=%d │ %s", window_start,
                 seconds_until_window_end(self._clock()), len(markets),
                 ", ".join(m.display_name for m in markets))
        balance_map = {m.market_id: (m.yes_token_id, m.no_token_id) for m in markets}

        book_task: Optional[asyncio.Future] = None
        tick_task: Optional[asyncio.Future] = None
        balance_task: Optional[asyncio.Future] = None
        try:
            while True:
                if self._wind_down.maybe_trigger(self._clock(), window_start):
                    self._spawn(self._wind_down.run(), "wind_down")

                if book_task is None:
                    book_task = asyncio.ensure_future(stream.__anext__())
                if tick_task is None:
                    tick_task = asyncio.ensure_future(asyncio.sleep(TICK_INTERVAL_S))
                if balance_task is None and self._cfg.position_balance_interval_secs > 0:
                    balance_task = asyncio.ensure_future(
                        asyncio.sleep(self._cfg.position_balance_interval_secs))

                waiting = {t for t in (book_task, tick_task, balance_task) if t is not None}
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)

                if book_task in done:
                    finished, book_task = book_task, None
                    try:
                        book = finished.result()
                    except StopAsyncIteration:
                        log.warning("BOOK_STREAM_END │ rebuilding")
                        return
                    except Exception as e:
                        log.error("BOOK_STREAM_ERROR │ %s │ rebuilding", e)
                        return
                    await self.on_book(book)

                if balance_task is not None and balance_task in done:
                    balance_task = None
                    self._spawn(self._balance(balance_map), "balance")

                if tick_task in done:
                    tick_task = None
                    if current_window_start(self._clock()) != window_start:
                        log.info("WINDOW_ROLLOVER %d │ next window", window_start)
                        emit(EventType.WINDOW_ROLLOVER, {"window": window_start})
                        return
        finally:
            pending = [t for t in (book_task, tick_task, balance_task) if t is not None and not t.done()]
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    log.debug("BOOK_STREAM_CLOSE │ %s", e)
            self._pairer.clear()

    async def _balance(self, balance_map: dict[str, tuple[str, str]]) -> None:
        try:
            await self._balancer.check_and_balance(balance_map)
        except Exception as e:
            log.error("BALANCE_CYCLE_FAIL │ %s", e)

    # -----------------------------------------------------------------
    # Book handling
    # -----------------------------------------------------------------

    async def on_book(self, book: BookSnapshot) -> None:
        if self._hedge is not None and self._hedge.watches(book.asset_id):
            self._spawn(self._hedge.on_book(book), "hedge")

        pair = self._pairer.process(book)
        if pair is None:
            return
        market = self._markets.get(pair.market_id)
        if market is None:
            return
        yes_ask = pair.yes_book.best_ask()
        no_ask = pair.no_book.best_ask()
        if yes_ask is None or no_ask is None:
            return

        prev = self._last_prices.get(market.market_id)
        yes_dir = direction(yes_ask.price, prev[0] if prev else None)
        no_dir = direction(no_ask.price, prev[1] if prev else None)
        self._last_prices[market.market_id] = (yes_ask.price, no_ask.price)

        total = yes_ask.price + no_ask.price
        log.debug("BOOK %s │ yes %s%s no %s%s │ total=%s │ edge=%.2f%%",
                  market.display_name, yes_ask.price, yes_dir, no_ask.price, no_dir,
                  total, (ONE - total) * 100)
        if total < ONE:
            log.info("ARB_SEEN %s │ total=%s │ edge=%.2f%% │ sizes %s/%s",
                     market.display_name, total, (ONE - total) * 100, yes_ask.size, no_ask.size)

        opp = self._detector.check(pair, market.yes_token_id, market.no_token_id)
        if opp is None:
            return
        if await self.admit(opp, market):
            self._submit(opp, market, yes_dir, no_dir)

    async def admit(self, opp: ArbitrageOpportunity, market: MarketInfo) -> bool:
        """Caller-side filters, in order. The first failure skips the opportunity."""
        cfg = self._cfg
        name = market.display_name
        if cfg.min_yes_price_threshold > ZERO and opp.yes_ask_price < cfg.min_yes_price_threshold:
            log.debug("SKIP_YES_PRICE %s │ %s < %s", name, opp.yes_ask_price, cfg.min_yes_price_threshold)
            return False
        if cfg.min_no_price_threshold > ZERO and opp.no_ask_price < cfg.min_no_price_threshold:
            log.debug("SKIP_NO_PRICE %s │ %s < %s", name, opp.no_ask_price, cfg.min_no_price_threshold)
            return False
        if cfg.stop_arbitrage_before_end_minutes > 0:
            seconds_left = int(market.end_time - self._clock())
            if seconds_left <= cfg.stop_arbitrage_before_end_minutes * 60:
                log.debug("SKIP_NEAR_END %s │ %ds left", name, seconds_left)
                return False
        if self._tracker.would_exceed_limit(opp.yes_cost, opp.no_cost):
            log.warning("%sSKIP_EXPOSURE %s │ current=%.2f │ order=%.2f │ limit=%s%s",
                        C_YELLOW, name, self._tracker.calculate_exposure(),
                        opp.yes_cost + opp.no_cost, self._tracker.max_exposure, C_RESET)
            return False
        if self._balancer.should_skip_arbitrage(opp.yes_token_id, opp.no_token_id):
            log.warning("%sSKIP_IMBALANCED %s%s", C_YELLOW, name, C_RESET)
            return False
        async with self._trade_lock:
            now = self._clock()
            if self._last_trade_at is not None and now - self._last_trade_at < cfg.min_trade_interval_secs:
                log.debug("SKIP_SPACING %s │ %.1fs since last trade", name, now - self._last_trade_at)
                return False
            self._last_trade_at = now
        return True

    def _submit(self, opp: ArbitrageOpportunity, market: MarketInfo, yes_dir: str, no_dir: str) -> None:
        # Exposure is charged before submission, whatever the fill outcome.
        current = self._tracker.calculate_exposure()
        log.info("%sARB_EXECUTE %s │ edge=%.2f%% │ size=%s │ cost=%.2f │ exposure=%.2f%s",
                 C_GREEN, market.display_name, opp.profit_percentage, opp.order_size,
                 opp.yes_cost + opp.no_cost, current, C_RESET)
        self._tracker.update_exposure_cost(opp.yes_token_id, opp.yes_ask_price, opp.order_size)
        self._tracker.update_exposure_cost(opp.no_token_id, opp.no_ask_price, opp.order_size)
        emit(EventType.TRADE_SUBMITTED, {
            "yes_price": str(opp.yes_ask_price),
            "no_price": str(opp.no_ask_price),
            "size": str(opp.order_size),
        }, market_id=opp.market_id)
        self._spawn(self._execute(opp, market, yes_dir, no_dir), "execute")

    async def _execute(self, opp: ArbitrageOpportunity, market: MarketInfo, yes_dir: str, no_dir: str) -> None:
        try:
            result = await asyncio.to_thread(
                self._executor.execute_arbitrage_pair, opp, yes_dir, no_dir)
        except Exception as e:
            log.error("%sARB_FAIL %s │ %s%s", C_RED, market.display_name, e, C_RESET)
            return

        pair = self._risk.register(
            result, opp.market_id, opp.yes_token_id, opp.no_token_id,
            opp.yes_ask_price, opp.no_ask_price, market_display=market.display_name,
        )
        try:
            action = self._risk.resolve(pair.pair_id)
        except KeyError as e:
            log.error("RECOVERY_FAIL %s │ %s", pair.pair_id, e)
            return
        await self.apply_action(action, pair)

    async def apply_action(self, action: RecoveryAction, pair: OrderPair) -> None:
        if isinstance(action, NoAction):
            return
        if isinstance(action, MonitorForExit):
            if self._hedge is None:
                log.info("ONE_SIDED %s │ hedging disabled, leaving position", pair.pair_id)
                return
            self._hedge.add_position(action)
        elif isinstance(action, SellExcess):
            if self._hedge is None:
                log.info("PARTIAL_IMBALANCE %s │ hedging disabled, leaving excess", pair.pair_id)
                return
            await self._sell_excess(action, pair)
        elif isinstance(action, ManualIntervention):
            log.warning("%sMANUAL_INTERVENTION %s │ %s%s", C_RED, pair.pair_id, action.reason, C_RESET)
        else:
            log.error("UNKNOWN_ACTION %s │ %r", pair.pair_id, action)

    async def _sell_excess(self, action: SellExcess, pair: OrderPair) -> None:
        book = self._pairer.get_book(action.token_id)
        bid = book.best_bid() if book is not None else None
        if bid is None:
            log.warning("SELL_EXCESS_NO_BID %s │ token has no bid", pair.pair_id)
            return
        entry = pair.yes_price if action.token_id == pair.yes_token_id else pair.no_price
        size = fee_adjusted_size(entry, action.amount)
        try:
            result = await asyncio.to_thread(self._executor.sell_at_price, action.token_id, bid.price, size)
        except Exception as e:
            log.error("%sSELL_EXCESS_FAIL %s │ %s%s", C_RED, pair.pair_id, e, C_RESET)
            return
        if result.filled > ZERO:
            self._tracker.update_position(action.token_id, -result.filled)
            self._tracker.update_exposure_cost(action.token_id, entry, -result.filled)
        log.info("SELL_EXCESS %s │ %s @ %s │ filled=%s", pair.pair_id, size, bid.price, result.filled)
