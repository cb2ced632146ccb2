"""Order-pair state machine: classify two-leg fills and route them to recovery."""

from __future__ import annotations

import logging
import threading
import time
from decimal import Decimal
from typing import Optional

from updown_arb.events import EventType, emit
from updown_arb.models import (
    C_RED,
    C_RESET,
    C_YELLOW,
    ZERO,
    ManualIntervention,
    NoAction,
    OrderPair,
    OrderPairResult,
    PairStatus,
    RecoveryAction,
)
from updown_arb.recovery import RecoveryStrategy
from updown_arb.tracker import PositionTracker

log = logging.getLogger("ua.risk")


def classify_fill(yes_size: Decimal, no_size: Decimal,
                  yes_filled: Decimal, no_filled: Decimal) -> PairStatus:
    if yes_filled == yes_size and no_filled == no_size:
        return PairStatus.BOTH_FILLED
    if yes_filled > ZERO and no_filled > ZERO:
        return PairStatus.PARTIALLY_FILLED
    if yes_filled > ZERO or no_filled > ZERO:
        return PairStatus.ONE_FAILED
    return PairStatus.BOTH_FAILED


class RiskManager:
    def __init__(self, tracker: PositionTracker, recovery: Optional[RecoveryStrategy] = None):
        self._tracker = tracker
        self._recovery = recovery or RecoveryStrategy()
        self._pairs: dict[str, OrderPair] = {}
        self._displays: dict[str, str] = {}  # pair_id -> market display name
        self._lock = threading.Lock()

    @property
    def tracker(self) -> PositionTracker:
        return self._tracker

    def get_pair(self, pair_id: str) -> Optional[OrderPair]:
        with self._lock:
            return self._pairs.get(pair_id)

    def register(
        self,
        result: OrderPairResult,
        market_id: str,
        yes_token_id: str,
        no_token_id: str,
        yes_price: Decimal,
        no_price: Decimal,
        market_display: str = "",
    ) -> OrderPair:
        """Record a submitted pair and apply its confirmed fills to positions.

        Exposure was charged when the trade was submitted, so only sizes move here.
        """
        pair = OrderPair(
            pair_id=result.pair_id,
            market_id=market_id,
            yes_order_id=result.yes_order_id,
            no_order_id=result.no_order_id,
            yes_token_id=yes_token_id,
            no_token_id=no_token_id,
            yes_size=result.yes_size,
            no_size=result.no_size,
            yes_filled=result.yes_filled,
            no_filled=result.no_filled,
            status=PairStatus.SUBMITTED,
            created_at=time.time(),
            yes_price=yes_price,
            no_price=no_price,
        )
        pair.status = classify_fill(pair.yes_size, pair.no_size, pair.yes_filled, pair.no_filled)

        with self._lock:
            self._pairs[pair.pair_id] = pair
            self._displays[pair.pair_id] = market_display or market_id

        if pair.yes_filled > ZERO:
            self._tracker.update_position(yes_token_id, pair.yes_filled)
        if pair.no_filled > ZERO:
            self._tracker.update_position(no_token_id, pair.no_filled)

        log.info("PAIR_REGISTERED %s │ %s │ yes=%s/%s │ no=%s/%s",
                 pair.pair_id, pair.status.value,
                 pair.yes_filled, pair.yes_size, pair.no_filled, pair.no_size)
        emit(EventType.TRADE_REGISTERED, {
            "pair_id": pair.pair_id,
            "status": pair.status.value,
            "yes_filled": str(pair.yes_filled),
            "no_filled": str(pair.no_filled),
        }, market_id=market_id)
        return pair

    def resolve(self, pair_id: str) -> RecoveryAction:
        """Decide what to do about a registered pair. Raises KeyError for unknown ids."""
        with self._lock:
            pair = self._pairs.get(pair_id)
            display = self._displays.get(pair_id, "")
        if pair is None:
            raise KeyError(f"unknown order pair: {pair_id}")

        status = pair.status
        if status is PairStatus.BOTH_FILLED:
            action: RecoveryAction = NoAction()
        elif status is PairStatus.PARTIALLY_FILLED:
            pair.status = PairStatus.RECOVERING
            action = self._recovery.handle_partial_fill(pair)
            pair.status = PairStatus.RESOLVED
        elif status is PairStatus.ONE_FAILED:
            pair.status = PairStatus.RECOVERING
            action = self._recovery.handle_one_sided_fill(pair, market_display=display)
            pair.status = PairStatus.RESOLVED
        elif status is PairStatus.BOTH_FAILED:
            log.warning("%sBOTH_FAILED %s │ market=%s │ no automatic recovery%s",
                        C_RED, pair_id, display, C_RESET)
            action = ManualIntervention(reason="both orders failed")
        else:
            # SUBMITTED, RECOVERING or RESOLVED: in flight or already decided
            action = NoAction()

        if not isinstance(action, NoAction):
            log.info("%sRECOVERY %s │ %s │ %s%s", C_YELLOW, pair_id, status.value, action, C_RESET)
        emit(EventType.RECOVERY_DECISION, {
            "pair_id": pair_id,
            "status": status.value,
            "action": type(action).__name__,
        }, market_id=pair.market_id)
        return action
