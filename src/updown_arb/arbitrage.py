"""Arbitrage detection on a paired Yes/No book."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from updown_arb.models import HUNDRED, ONE, ArbitrageOpportunity, OrderBookPair

log = logging.getLogger("ua.arbitrage")


class ArbitrageDetector:
    def __init__(
        self,
        execution_spread: Decimal,
        max_order_size: Decimal,
        min_profit: Decimal = Decimal("0"),
    ):
        self._execution_spread = execution_spread
        self._max_order_size = max_order_size
        self._min_profit = min_profit  # fraction of 1.0, on top of the spread

    @property
    def threshold(self) -> Decimal:
        """Highest combined ask we are willing to pay."""
        return ONE - self._execution_spread

    def check(
        self,
        pair: OrderBookPair,
        yes_token_id: str,
        no_token_id: str,
    ) -> Optional[ArbitrageOpportunity]:
        yes_ask = pair.yes_book.best_ask()
        no_ask = pair.no_book.best_ask()
        if yes_ask is None or no_ask is None:
            return None

        total = yes_ask.price + no_ask.price
        if total > self.threshold or ONE - total < self._min_profit:
            return None

        order_size = min(yes_ask.size, no_ask.size, self._max_order_size)
        if order_size <= 0:
            return None

        log.debug("ARB_FOUND %s │ %s + %s = %s │ size=%s",
                  pair.market_id, yes_ask.price, no_ask.price, total, order_size)
        return ArbitrageOpportunity(
            market_id=pair.market_id,
            yes_token_id=yes_token_id,
            no_token_id=no_token_id,
            yes_ask_price=yes_ask.price,
            no_ask_price=no_ask.price,
            yes_size=yes_ask.size,
            no_size=no_ask.size,
            total_cost=total,
            profit_percentage=(ONE - total) * HUNDRED,
            order_size=order_size,
        )
