"""Take-profit / stop-loss exits for one-sided fills.

Only fed when the hedge-on-exit recovery policy is enabled. Each monitored leg
is sold down to the size of its opposite leg once the best bid crosses either
exit level; the matched remainder is left for merging.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from decimal import ROUND_DOWN, Decimal
from typing import Callable

from updown_arb.models import (
    C_GREEN,
    C_RED,
    C_RESET,
    HUNDRED,
    MIN_TRADABLE,
    ONE,
    ZERO,
    BookSnapshot,
    HedgePosition,
    MonitorForExit,
    SellResult,
)
from updown_arb.tracker import PositionTracker

log = logging.getLogger("ua.hedge")

FEE_SCALE = Decimal("100")
FEE_RATE = Decimal("0.25")
PROCESSING = "processing"


def fee_adjusted_size(entry_price: Decimal, base_amount: Decimal) -> Decimal:
    """Shrink *base_amount* by the taker fee at *entry_price*; floor to 0.01, min 0.01.

    fee% = 100 × 0.25 × (p(1−p))²
    """
    base = entry_price * (ONE - entry_price)
    fee = FEE_SCALE * FEE_RATE * base * base
    if fee >= HUNDRED:
        return MIN_TRADABLE
    available = base_amount * (HUNDRED - fee) / HUNDRED
    floored = available.quantize(MIN_TRADABLE, rounding=ROUND_DOWN)
    return floored if floored > ZERO else MIN_TRADABLE


class HedgeMonitor:
    def __init__(
        self,
        tracker: PositionTracker,
        sell: Callable[[str, Decimal, Decimal], SellResult],
    ):
        self._tracker = tracker
        self._sell = sell
        self._positions: dict[str, HedgePosition] = {}  # pair_id -> position
        self._lock = threading.Lock()

    def add_position(self, action: MonitorForExit) -> HedgePosition:
        position = HedgePosition(
            token_id=action.token_id,
            opposite_token_id=action.opposite_token_id,
            amount=action.amount,
            entry_price=action.entry_price,
            take_profit_price=action.entry_price * (ONE + action.take_profit_pct),
            stop_loss_price=action.entry_price * (ONE - action.stop_loss_pct),
            pair_id=action.pair_id,
            market_display=action.market_display,
        )
        with self._lock:
            self._positions[action.pair_id] = position
        log.info("HEDGE_WATCH %s │ %s shares @ %s │ tp=%.4f sl=%.4f",
                 position.market_display, position.amount, position.entry_price,
                 position.take_profit_price, position.stop_loss_price)
        return position

    def remove_position(self, pair_id: str) -> None:
        with self._lock:
            self._positions.pop(pair_id, None)

    def get_position(self, pair_id: str) -> HedgePosition | None:
        with self._lock:
            return self._positions.get(pair_id)

    def watches(self, token_id: str) -> bool:
        with self._lock:
            return any(p.token_id == token_id for p in self._positions.values())

    def _claim(self, book: BookSnapshot, bid: Decimal) -> list[tuple[HedgePosition, Decimal, str]]:
        """Pick positions to sell on this book and mark them in flight."""
        claimed = []
        with self._lock:
            for pair_id, pos in self._positions.items():
                if pos.token_id != book.asset_id:
                    continue
                if pos.order_id is not None:
                    if pos.order_id == PROCESSING or pos.pending_sell_amount <= ZERO:
                        continue
                    # Resting sell left unfilled: re-quote at the new bid.
                    pos.order_id = None

                if bid >= pos.take_profit_price:
                    reason = f"take_profit({(bid - pos.entry_price) / pos.entry_price * HUNDRED:.2f}%)"
                elif bid <= pos.stop_loss_price:
                    reason = f"stop_loss({(pos.entry_price - bid) / pos.entry_price * HUNDRED:.2f}%)"
                else:
                    continue

                current = self._tracker.get_position(pos.token_id)
                opposite = self._tracker.get_position(pos.opposite_token_id)
                difference = current - opposite
                if difference <= ZERO:
                    log.info("HEDGE_COVERED %s │ pos=%s opposite=%s", pos.market_display, current, opposite)
                    continue
                base = pos.pending_sell_amount if pos.pending_sell_amount > ZERO else difference
                pos.order_id = PROCESSING
                claimed.append((pos, fee_adjusted_size(pos.entry_price, base), reason))
        return claimed

    async def on_book(self, book: BookSnapshot) -> int:
        """Check exit levels against the best bid. Returns the number of sells placed."""
        best_bid = book.best_bid()
        if best_bid is None:
            return 0
        placed = 0
        for pos, amount, reason in self._claim(book, best_bid.price):
            log.info("HEDGE_EXIT %s │ %s │ bid=%s entry=%s │ selling %s",
                     pos.market_display, reason, best_bid.price, pos.entry_price, amount)
            try:
                result = await asyncio.to_thread(self._sell, pos.token_id, best_bid.price, amount)
            except Exception as e:
                log.error("%sHEDGE_SELL_FAIL %s │ price=%s │ %s%s",
                          C_RED, pos.market_display, best_bid.price, e, C_RESET)
                with self._lock:
                    pos.order_id = None
                continue
            placed += 1
            self._apply_result(pos, result)
        return placed

    def _apply_result(self, pos: HedgePosition, result: SellResult) -> None:
        with self._lock:
            if result.remaining > ZERO:
                pos.order_id = result.order_id
                pos.pending_sell_amount = result.remaining
            else:
                pos.order_id = None
                pos.pending_sell_amount = ZERO
        if result.filled > ZERO:
            self._tracker.update_position(pos.token_id, -result.filled)
            self._tracker.update_exposure_cost(pos.token_id, pos.entry_price, -result.filled)
            log.info("%sHEDGE_SOLD %s │ filled=%s │ remaining=%s │ exposure=%.2f%s",
                     C_GREEN, pos.market_display, result.filled, result.remaining,
                     self._tracker.calculate_exposure(), C_RESET)
