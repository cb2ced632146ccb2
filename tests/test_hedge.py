"""Tests for hedge.py — fee-adjusted sizing and exit triggers."""

import asyncio
from decimal import Decimal
from unittest.mock import MagicMock

from updown_arb.hedge import PROCESSING, HedgeMonitor, fee_adjusted_size
from updown_arb.models import MonitorForExit, SellResult

D = Decimal


def _watch(entry="0.40", amount="10"):
    return MonitorForExit(
        token_id="y",
        opposite_token_id="n",
        amount=D(amount),
        entry_price=D(entry),
        take_profit_pct=D("0.05"),
        stop_loss_pct=D("0.05"),
        pair_id="p1",
        market_display="btc market",
    )


def _holding(tracker, yes="10", no="0", entry="0.40"):
    tracker.update_position("y", D(yes))
    tracker.update_position("n", D(no))
    tracker.update_exposure_cost("y", D(entry), D(yes))


class TestFeeAdjustedSize:
    def test_fee_at_midpoint(self):
        # fee = 100 × 0.25 × 0.25² = 1.5625%
        assert fee_adjusted_size(D("0.5"), D("10")) == D("9.84")

    def test_fee_at_forty_cents(self):
        assert fee_adjusted_size(D("0.40"), D("10")) == D("9.85")

    def test_minimum_size(self):
        assert fee_adjusted_size(D("0.5"), D("0.001")) == D("0.01")


class TestHedgeMonitor:
    def test_exit_levels(self, tracker):
        monitor = HedgeMonitor(tracker, MagicMock())
        pos = monitor.add_position(_watch())
        assert pos.take_profit_price == D("0.42")
        assert pos.stop_loss_price == D("0.38")
        assert monitor.watches("y")
        assert not monitor.watches("n")

    def test_take_profit_sells_and_updates_tracker(self, tracker, make_book):
        _holding(tracker)
        sell = MagicMock(return_value=SellResult(order_id="o1", filled=D("9.85"), remaining=D("0")))
        monitor = HedgeMonitor(tracker, sell)
        monitor.add_position(_watch())

        placed = asyncio.run(monitor.on_book(make_book("y", bids=[("0.43", "50")])))

        assert placed == 1
        sell.assert_called_once_with("y", D("0.43"), D("9.85"))
        assert tracker.get_position("y") == D("0.15")
        assert tracker.get_exposure("y") == D("0.0600")
        assert monitor.get_position("p1").order_id is None

    def test_stop_loss_triggers(self, tracker, make_book):
        _holding(tracker)
        sell = MagicMock(return_value=SellResult(order_id="o1", filled=D("0"), remaining=D("9.85")))
        monitor = HedgeMonitor(tracker, sell)
        monitor.add_position(_watch())

        assert asyncio.run(monitor.on_book(make_book("y", bids=[("0.37", "50")]))) == 1
        pos = monitor.get_position("p1")
        assert pos.order_id == "o1"
        assert pos.pending_sell_amount == D("9.85")

    def test_inside_band_does_nothing(self, tracker, make_book):
        _holding(tracker)
        sell = MagicMock()
        monitor = HedgeMonitor(tracker, sell)
        monitor.add_position(_watch())
        assert asyncio.run(monitor.on_book(make_book("y", bids=[("0.40", "50")]))) == 0
        sell.assert_not_called()

    def test_covered_position_not_sold(self, tracker, make_book):
        _holding(tracker, yes="10", no="10")
        sell = MagicMock()
        monitor = HedgeMonitor(tracker, sell)
        monitor.add_position(_watch())
        assert asyncio.run(monitor.on_book(make_book("y", bids=[("0.50", "50")]))) == 0
        sell.assert_not_called()

    def test_in_flight_position_skipped(self, tracker, make_book):
        _holding(tracker)
        sell = MagicMock()
        monitor = HedgeMonitor(tracker, sell)
        monitor.add_position(_watch()).order_id = PROCESSING
        assert asyncio.run(monitor.on_book(make_book("y", bids=[("0.50", "50")]))) == 0

    def test_sell_failure_releases_claim(self, tracker, make_book):
        _holding(tracker)
        monitor = HedgeMonitor(tracker, MagicMock(side_effect=RuntimeError("rejected")))
        monitor.add_position(_watch())
        assert asyncio.run(monitor.on_book(make_book("y", bids=[("0.50", "50")]))) == 0
        assert monitor.get_position("p1").order_id is None
        assert tracker.get_position("y") == D("10")

    def test_remove_position(self, tracker):
        monitor = HedgeMonitor(tracker, MagicMock())
        monitor.add_position(_watch())
        monitor.remove_position("p1")
        assert monitor.get_position("p1") is None
        assert not monitor.watches("y")
