"""Position balancer: cancel open buy orders that would deepen a Yes/No imbalance.

Each cycle snapshots every open order (all pages) and every live position
before deciding anything, then plans cancellations per market:

1. Position imbalance (|yes_pos − no_pos| ≥ threshold): cancel all orders on
   the heavy side, and lowest-priced orders on the light side until
   min(yes_pending, no_pending) has been removed.
2. Pending imbalance: each side's position + pending is compared with the
   average of both; a side over it by ≥ threshold loses its lowest-priced
   orders until the excess is covered.

Markets whose total (positions + pending) is under ``min_total`` are left alone.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Iterable, Optional

from updown_arb.events import EventType, emit
from updown_arb.models import (
    C_RESET,
    C_YELLOW,
    ZERO,
    MarketBalanceData,
    OpenOrder,
    OrderInfo,
    Position,
    short_id,
)
from updown_arb.tracker import PositionTracker

log = logging.getLogger("ua.balancer")

END_CURSOR = "LTE="
TWO = Decimal("2")

ListOrdersFn = Callable[[Optional[str]], tuple[list[OpenOrder], str]]
GetPositionsFn = Callable[[], Iterable[Position]]
CancelOrdersFn = Callable[[list[str]], object]


@dataclass
class BalancePlan:
    condition_id: str
    reason: str = ""
    cancel_yes: list[str] = field(default_factory=list)
    cancel_no: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.cancel_yes and not self.cancel_no


def select_lowest_priced(orders: list[OrderInfo], target: Decimal) -> list[str]:
    """Pick orders cheapest first until their pending size reaches *target*."""
    picked: list[str] = []
    accumulated = ZERO
    for order in sorted(orders, key=lambda o: o.price):
        if accumulated >= target:
            break
        picked.append(order.order_id)
        accumulated += order.pending_size
    return picked


def plan_market(data: MarketBalanceData, threshold: Decimal, min_total: Decimal) -> BalancePlan:
    plan = BalancePlan(condition_id=data.condition_id)
    yes_pending = data.yes_pending
    no_pending = data.no_pending
    yes_total = data.yes_position + yes_pending
    no_total = data.no_position + no_pending

    if yes_total + no_total < min_total:
        return plan

    if abs(data.yes_position - data.no_position) >= threshold:
        light_target = min(yes_pending, no_pending)
        if data.yes_position > data.no_position:
            plan.reason = "yes_heavy"
            plan.cancel_yes = [o.order_id for o in data.yes_orders]
            if light_target > ZERO:
                plan.cancel_no = select_lowest_priced(data.no_orders, light_target)
        else:
            plan.reason = "no_heavy"
            plan.cancel_no = [o.order_id for o in data.no_orders]
            if light_target > ZERO:
                plan.cancel_yes = select_lowest_priced(data.yes_orders, light_target)
        return plan

    target = (yes_total + no_total) / TWO
    yes_excess = yes_total - target
    no_excess = no_total - target
    if yes_excess > ZERO and yes_excess >= threshold:
        plan.reason = "yes_pending_excess"
        plan.cancel_yes = select_lowest_priced(data.yes_orders, yes_excess)
    if no_excess > ZERO and no_excess >= threshold:
        plan.reason = "no_pending_excess"
        plan.cancel_no = select_lowest_priced(data.no_orders, no_excess)
    return plan


def build_balance_data(
    markets: dict[str, tuple[str, str]],
    positions: Iterable[Position],
    orders: Iterable[OpenOrder],
) -> dict[str, MarketBalanceData]:
    """Group positions and BUY orders by market. Positions are matched on token id."""
    data = {
        cid: MarketBalanceData(condition_id=cid, yes_token_id=yes, no_token_id=no)
        for cid, (yes, no) in markets.items()
    }
    by_token: dict[str, tuple[MarketBalanceData, bool]] = {}
    for d in data.values():
        by_token[d.yes_token_id] = (d, True)
        by_token[d.no_token_id] = (d, False)

    for pos in positions:
        hit = by_token.get(pos.asset)
        if hit is None:
            continue
        d, is_yes = hit
        if is_yes:
            d.yes_position = pos.size
        else:
            d.no_position = pos.size

    for order in orders:
        if order.side.upper() != "BUY":
            continue
        hit = by_token.get(order.asset_id)
        if hit is None:
            continue
        pending = order.pending_size
        if pending <= ZERO:
            continue
        d, is_yes = hit
        info = OrderInfo(order_id=order.order_id, price=order.price, pending_size=pending)
        if is_yes:
            d.yes_orders.append(info)
        else:
            d.no_orders.append(info)
    return data


class PositionBalancer:
    def __init__(
        self,
        tracker: PositionTracker,
        list_open_orders: ListOrdersFn,
        get_positions: GetPositionsFn,
        cancel_orders: CancelOrdersFn,
        threshold: Decimal = Decimal("2"),
        min_total: Decimal = Decimal("5"),
    ):
        self._tracker = tracker
        self._list_open_orders = list_open_orders
        self._get_positions = get_positions
        self._cancel_orders = cancel_orders
        self._threshold = threshold
        self._min_total = min_total

    def should_skip_arbitrage(self, yes_token_id: str, no_token_id: str) -> bool:
        """Pre-trade gate on tracked positions only; pending orders are ignored."""
        yes_pos, no_pos = self._tracker.get_pair_positions(yes_token_id, no_token_id)
        diff = abs(yes_pos - no_pos)
        if diff >= self._threshold:
            log.debug("BALANCE_SKIP │ yes=%s no=%s │ diff=%s ≥ %s",
                      yes_pos, no_pos, diff, self._threshold)
            return True
        return False

    def _fetch_all_orders(self) -> list[OpenOrder]:
        orders: list[OpenOrder] = []
        cursor: Optional[str] = None
        while True:
            page, next_cursor = self._list_open_orders(cursor)
            orders.extend(page)
            if not next_cursor or next_cursor == END_CURSOR:
                return orders
            cursor = next_cursor

    async def check_and_balance(self, markets: dict[str, tuple[str, str]]) -> list[BalancePlan]:
        """One reconciliation cycle over *markets* (condition_id -> (yes, no)).

        Returns the plans that led to cancellations.
        """
        orders = await asyncio.to_thread(self._fetch_all_orders)
        if not orders:
            return []
        positions = list(await asyncio.to_thread(self._get_positions))

        executed: list[BalancePlan] = []
        for cid, data in build_balance_data(markets, positions, orders).items():
            try:
                plan = plan_market(data, self._threshold, self._min_total)
                if plan.empty:
                    continue
                await self._execute(plan, data)
                executed.append(plan)
            except Exception as e:
                log.error("BALANCE_FAIL %s │ %s", short_id(cid), e)
        return executed

    async def _execute(self, plan: BalancePlan, data: MarketBalanceData) -> None:
        log.info("%sBALANCE %s │ %s │ yes_pos=%s no_pos=%s │ yes_pend=%s no_pend=%s │ "
                 "cancel yes=%d no=%d%s",
                 C_YELLOW, short_id(plan.condition_id), plan.reason,
                 data.yes_position, data.no_position, data.yes_pending, data.no_pending,
                 len(plan.cancel_yes), len(plan.cancel_no), C_RESET)
        for side, ids in (("YES", plan.cancel_yes), ("NO", plan.cancel_no)):
            if not ids:
                continue
            try:
                await asyncio.to_thread(self._cancel_orders, ids)
            except Exception as e:
                log.error("BALANCE_CANCEL_FAIL %s │ side=%s │ %s",
                          short_id(plan.condition_id), side, e)
                continue
            emit(EventType.BALANCE_ACTION, {
                "reason": plan.reason,
                "side": side,
                "cancelled": len(ids),
            }, market_id=plan.condition_id)
