"""Recovery policies for partially filled and one-sided order pairs."""

from __future__ import annotations

import logging
from decimal import Decimal

from updown_arb.models import (
    ZERO,
    MonitorForExit,
    NoAction,
    OrderPair,
    RecoveryAction,
    SellExcess,
)

log = logging.getLogger("ua.recovery")


def imbalance_ratio(yes_filled: Decimal, no_filled: Decimal) -> Decimal:
    """|yes − no| / (yes + no), zero when nothing filled."""
    total = yes_filled + no_filled
    if total <= ZERO:
        return ZERO
    return abs(yes_filled - no_filled) / total


class RecoveryStrategy:
    """Hedging disabled: every decision resolves to NoAction.

    Subclasses override the two hooks to return real remedial actions.
    """

    def __init__(
        self,
        imbalance_threshold: Decimal = Decimal("0.1"),
        take_profit_pct: Decimal = Decimal("0.05"),
        stop_loss_pct: Decimal = Decimal("0.05"),
    ):
        self.imbalance_threshold = imbalance_threshold
        self.take_profit_pct = take_profit_pct
        self.stop_loss_pct = stop_loss_pct

    def handle_partial_fill(self, pair: OrderPair) -> RecoveryAction:
        ratio = imbalance_ratio(pair.yes_filled, pair.no_filled)
        if ratio <= self.imbalance_threshold:
            return NoAction()
        side, amount = _heavier_side(pair)
        log.debug("PARTIAL_IMBALANCE %s │ side=%s │ excess=%s │ ratio=%.3f",
                  pair.pair_id, side, amount, ratio)
        return self._on_partial_imbalance(pair)

    def handle_one_sided_fill(self, pair: OrderPair, market_display: str = "") -> RecoveryAction:
        if pair.yes_filled > ZERO and pair.no_filled == ZERO:
            side, filled = "YES", pair.yes_filled
        elif pair.no_filled > ZERO and pair.yes_filled == ZERO:
            side, filled = "NO", pair.no_filled
        else:
            return NoAction()
        log.debug("ONE_SIDED %s │ %s filled %s", pair.pair_id, side, filled)
        return self._on_one_sided(pair, market_display=market_display or pair.market_id)

    def _on_partial_imbalance(self, pair: OrderPair) -> RecoveryAction:
        return NoAction()

    def _on_one_sided(self, pair: OrderPair, market_display: str) -> RecoveryAction:
        return NoAction()


class HedgeOnExitStrategy(RecoveryStrategy):
    """Sell the excess of an imbalanced partial fill; monitor one-sided fills
    for a take-profit/stop-loss exit."""

    def _on_partial_imbalance(self, pair: OrderPair) -> RecoveryAction:
        if pair.yes_filled > pair.no_filled:
            return SellExcess(token_id=pair.yes_token_id, amount=pair.yes_filled - pair.no_filled)
        return SellExcess(token_id=pair.no_token_id, amount=pair.no_filled - pair.yes_filled)

    def _on_one_sided(self, pair: OrderPair, market_display: str) -> RecoveryAction:
        if pair.yes_filled > ZERO:
            token, opposite, amount, entry = (
                pair.yes_token_id, pair.no_token_id, pair.yes_filled, pair.yes_price,
            )
        else:
            token, opposite, amount, entry = (
                pair.no_token_id, pair.yes_token_id, pair.no_filled, pair.no_price,
            )
        return MonitorForExit(
            token_id=token,
            opposite_token_id=opposite,
            amount=amount,
            entry_price=entry,
            take_profit_pct=self.take_profit_pct,
            stop_loss_pct=self.stop_loss_pct,
            pair_id=pair.pair_id,
            market_display=market_display,
        )


def _heavier_side(pair: OrderPair) -> tuple[str, Decimal]:
    if pair.yes_filled > pair.no_filled:
        return "YES", pair.yes_filled - pair.no_filled
    return "NO", pair.no_filled - pair.yes_filled
