"""Tests for balancer.py — imbalance planning and the cancel cycle."""

import asyncio
from decimal import Decimal
from unittest.mock import MagicMock

from updown_arb.balancer import (
    END_CURSOR,
    PositionBalancer,
    build_balance_data,
    plan_market,
    select_lowest_priced,
)
from updown_arb.models import MarketBalanceData, OpenOrder, OrderInfo, Position

D = Decimal


def _info(order_id, price, pending):
    return OrderInfo(order_id=order_id, price=D(price), pending_size=D(pending))


def _data(yes_pos, no_pos, yes_orders=(), no_orders=()):
    return MarketBalanceData(
        condition_id="c1",
        yes_token_id="y1",
        no_token_id="n1",
        yes_position=D(yes_pos),
        no_position=D(no_pos),
        yes_orders=list(yes_orders),
        no_orders=list(no_orders),
    )


class TestSelectLowestPriced:
    def test_cheapest_first_until_target(self):
        orders = [_info("b", "0.50", "4"), _info("a", "0.40", "3"), _info("c", "0.60", "9")]
        assert select_lowest_priced(orders, D("5")) == ["a", "b"]

    def test_zero_target_selects_nothing(self):
        assert select_lowest_priced([_info("a", "0.40", "3")], D("0")) == []


class TestPlanMarket:
    def test_position_imbalance_cancels_heavy_side(self):
        data = _data(
            "8", "2",
            yes_orders=[_info("o1", "0.45", "5")],
            no_orders=[_info("o2", "0.40", "3"), _info("o3", "0.50", "4")],
        )
        plan = plan_market(data, D("2"), D("5"))
        assert plan.reason == "yes_heavy"
        assert plan.cancel_yes == ["o1"]
        # light side trimmed by min(yes_pending=5, no_pending=7)
        assert plan.cancel_no == ["o2", "o3"]

    def test_no_heavy(self):
        data = _data("1", "6", yes_orders=[_info("o1", "0.45", "5")])
        plan = plan_market(data, D("2"), D("5"))
        assert plan.reason == "no_heavy"
        assert plan.cancel_no == []
        assert plan.cancel_yes == []  # no pending on the heavy side -> nothing to mirror

    def test_below_min_total_left_alone(self):
        plan = plan_market(_data("1", "0", yes_orders=[_info("o1", "0.4", "1")]), D("1"), D("5"))
        assert plan.empty

    def test_pending_excess(self):
        data = _data(
            "5", "5",
            yes_orders=[_info("a", "0.30", "4"), _info("b", "0.40", "2")],
        )
        plan = plan_market(data, D("2"), D("5"))
        assert plan.reason == "yes_pending_excess"
        assert plan.cancel_yes == ["a"]
        assert plan.cancel_no == []

    def test_balanced_market_untouched(self):
        data = _data("5", "5", yes_orders=[_info("a", "0.3", "1")], no_orders=[_info("b", "0.3", "1")])
        assert plan_market(data, D("2"), D("5")).empty


class TestBuildBalanceData:
    def test_groups_by_token_and_filters_orders(self):
        markets = {"c1": ("y1", "n1")}
        positions = [
            Position(asset="y1", condition_id="c1", outcome_index=0, size=D("8")),
            Position(asset="zz", condition_id="c9", outcome_index=0, size=D("3")),
        ]
        orders = [
            OpenOrder("o1", "y1", "BUY", D("0.45"), D("10"), D("4")),
            OpenOrder("o2", "n1", "SELL", D("0.50"), D("10")),
            OpenOrder("o3", "n1", "BUY", D("0.50"), D("10"), D("10")),
            OpenOrder("o4", "other", "BUY", D("0.50"), D("10")),
        ]
        data = build_balance_data(markets, positions, orders)["c1"]
        assert data.yes_position == D("8")
        assert data.no_position == D("0")
        assert [o.order_id for o in data.yes_orders] == ["o1"]
        assert data.yes_pending == D("6")
        assert data.no_orders == []


class TestPositionBalancer:
    def test_should_skip_arbitrage(self, tracker):
        balancer = PositionBalancer(tracker, MagicMock(), MagicMock(), MagicMock())
        tracker.update_position("y1", D("8"))
        tracker.update_position("n1", D("2"))
        assert balancer.should_skip_arbitrage("y1", "n1") is True
        tracker.update_position("y1", D("-5"))
        assert balancer.should_skip_arbitrage("y1", "n1") is False

    def test_cycle_walks_pages_and_cancels(self, tracker):
        pages = {
            None: ([OpenOrder("o1", "y1", "BUY", D("0.45"), D("5"))], "c1"),
            "c1": ([OpenOrder("o2", "n1", "BUY", D("0.40"), D("3"))], END_CURSOR),
        }
        list_orders = MagicMock(side_effect=lambda cursor: pages[cursor])
        get_positions = MagicMock(return_value=[
            Position(asset="y1", condition_id="c1", outcome_index=0, size=D("8")),
            Position(asset="n1", condition_id="c1", outcome_index=1, size=D("2")),
        ])
        cancel = MagicMock()
        balancer = PositionBalancer(tracker, list_orders, get_positions, cancel)

        plans = asyncio.run(balancer.check_and_balance({"c1": ("y1", "n1")}))

        assert list_orders.call_count == 2
        assert len(plans) == 1
        assert plans[0].reason == "yes_heavy"
        cancel.assert_any_call(["o1"])
        cancel.assert_any_call(["o2"])

    def test_no_open_orders_skips_cycle(self, tracker):
        get_positions = MagicMock()
        balancer = PositionBalancer(
            tracker, MagicMock(return_value=([], END_CURSOR)), get_positions, MagicMock(),
        )
        assert asyncio.run(balancer.check_and_balance({"c1": ("y1", "n1")})) == []
        get_positions.assert_not_called()

    def test_cancel_failure_does_not_abort(self, tracker):
        list_orders = MagicMock(return_value=(
            [OpenOrder("o1", "y1", "BUY", D("0.45"), D("5"))], END_CURSOR,
        ))
        get_positions = MagicMock(return_value=[
            Position(asset="y1", condition_id="c1", outcome_index=0, size=D("8")),
        ])
        cancel = MagicMock(side_effect=RuntimeError("api down"))
        balancer = PositionBalancer(tracker, list_orders, get_positions, cancel)

        plans = asyncio.run(balancer.check_and_balance({"c1": ("y1", "n1")}))
        assert len(plans) == 1
        cancel.assert_called_once_with(["o1"])
