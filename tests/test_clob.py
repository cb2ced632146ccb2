"""Tests for clob.py — price helpers and the trading executor against a mocked client."""

import time
from dataclasses import replace
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from updown_arb.clob import (
    DIR_DOWN,
    DIR_FLAT,
    DIR_UP,
    END_CURSOR,
    GTD_SAFETY_SECS,
    TradingExecutor,
    _filled_size,
    init_client,
    clamp_price,
    round_to_tick,
    slippage_for,
)
from updown_arb.config import Secrets
from updown_arb.models import ArbitrageOpportunity

D = Decimal


def _opp(size="80"):
    return ArbitrageOpportunity(
        market_id="m1",
        yes_token_id="y",
        no_token_id="n",
        yes_ask_price=D("0.48"),
        no_ask_price=D("0.50"),
        yes_size=D("100"),
        no_size=D("80"),
        total_cost=D("0.98"),
        profit_percentage=D("2"),
        order_size=D(size),
    )


def _client(tick="0.01"):
    client = MagicMock()
    client.get_tick_size.return_value = tick
    client.create_order.side_effect = lambda args: {"signed": args.token_id}
    return client


class TestPriceHelpers:
    def test_round_to_tick_half_up(self):
        assert round_to_tick(D("0.4849"), D("0.01")) == D("0.48")
        assert round_to_tick(D("0.485"), D("0.01")) == D("0.49")
        assert round_to_tick(D("0.4851"), D("0.001")) == D("0.485")

    def test_clamp_price(self):
        assert clamp_price(D("1.2")) == D("0.99")
        assert clamp_price(D("0")) == D("0.01")
        assert clamp_price(D("0.5")) == D("0.5")

    def test_slippage_by_direction(self):
        slip = (D("0"), D("0.01"))
        assert slippage_for(DIR_DOWN, slip) == D("0.01")
        assert slippage_for(DIR_UP, slip) == D("0")
        assert slippage_for(DIR_FLAT, slip) == D("0")


class TestFilledSize:
    def test_matched_uses_taking_amount(self):
        assert _filled_size({"status": "matched", "takingAmount": "5"}, D("10")) == D("5")

    def test_matched_without_amount_assumes_full(self):
        assert _filled_size({"status": "matched"}, D("10")) == D("10")

    def test_resting_order_not_filled(self):
        assert _filled_size({"status": "live", "orderID": "x"}, D("10")) == D("0")

    def test_rejected(self):
        assert _filled_size({"success": False, "status": "matched"}, D("10")) == D("0")
        assert _filled_size(None, D("10")) == D("0")


class TestTradingExecutor:
    def test_limit_price_applies_slippage(self, default_cfg):
        ex = TradingExecutor(_client(), default_cfg)
        assert ex.limit_price("y", D("0.48"), DIR_UP) == D("0.48")
        assert ex.limit_price("y", D("0.48"), DIR_DOWN) == D("0.49")

    def test_tick_size_fallback(self, default_cfg):
        client = _client()
        client.get_tick_size.side_effect = RuntimeError("404")
        ex = TradingExecutor(client, default_cfg)
        assert ex.limit_price("y", D("0.4849"), DIR_FLAT) == D("0.48")

    def test_dry_run_fills_both_legs(self, default_cfg):
        client = _client()
        ex = TradingExecutor(client, default_cfg)
        result = ex.execute_arbitrage_pair(_opp("80.567"))
        assert result.yes_filled == D("80.56")
        assert result.no_filled == D("80.56")
        assert len(result.pair_id) == 8
        client.post_orders.assert_not_called()

    def test_live_batch_reports_fills(self, default_cfg):
        client = _client()
        client.post_orders.return_value = [
            {"success": True, "orderID": "oy", "status": "matched", "takingAmount": "80"},
            {"success": True, "orderID": "on", "status": "live"},
        ]
        ex = TradingExecutor(client, replace(default_cfg, dry_run=False))

        result = ex.execute_arbitrage_pair(_opp(), DIR_UP, DIR_DOWN)

        assert (result.yes_order_id, result.no_order_id) == ("oy", "on")
        assert result.yes_filled == D("80")
        assert result.no_filled == D("0")
        batch = client.post_orders.call_args.args[0]
        assert len(batch) == 2
        prices = [c.args[0].price for c in client.create_order.call_args_list]
        assert prices == [0.48, 0.51]

    def test_live_gtd_expiration(self, default_cfg):
        client = _client()
        client.post_orders.return_value = [{"status": "live"}, {"status": "live"}]
        ex = TradingExecutor(client, replace(default_cfg, dry_run=False, gtd_expiration_secs=300))
        before = int(time.time())
        ex.execute_arbitrage_pair(_opp())
        expiration = client.create_order.call_args_list[0].args[0].expiration
        assert before + GTD_SAFETY_SECS + 300 <= expiration <= before + GTD_SAFETY_SECS + 302

    def test_unexpected_batch_response(self, default_cfg):
        client = _client()
        client.post_orders.return_value = {"error": "bad"}
        ex = TradingExecutor(client, replace(default_cfg, dry_run=False))
        with pytest.raises(RuntimeError):
            ex.execute_arbitrage_pair(_opp())

    def test_list_open_orders(self, default_cfg):
        client = _client()
        client.get_orders.return_value = [{
            "id": "o1", "asset_id": "y", "side": "buy",
            "price": "0.45", "original_size": "10", "size_matched": "4",
        }]
        ex = TradingExecutor(client, replace(default_cfg, dry_run=False))
        orders, cursor = ex.list_open_orders()
        assert cursor == END_CURSOR
        assert orders[0].side == "BUY"
        assert orders[0].pending_size == D("6")

    def test_dry_run_lists_nothing(self, default_cfg):
        client = _client()
        assert TradingExecutor(client, default_cfg).list_open_orders() == ([], END_CURSOR)
        client.get_orders.assert_not_called()

    def test_cancel_orders(self, default_cfg):
        client = _client()
        ex = TradingExecutor(client, replace(default_cfg, dry_run=False))
        ex.cancel_orders([])
        client.cancel_orders.assert_not_called()
        ex.cancel_orders(["o1", "o2"])
        client.cancel_orders.assert_called_once_with(["o1", "o2"])

    def test_sell_matched(self, default_cfg):
        client = _client()
        client.post_order.return_value = {"orderID": "s1", "status": "matched", "makingAmount": "3"}
        ex = TradingExecutor(client, replace(default_cfg, dry_run=False))
        result = ex.sell_at_price("y", D("0.01"), D("5"))
        assert result.order_id == "s1"
        assert result.filled == D("3")
        assert result.remaining == D("2")

    def test_sell_rejected_raises(self, default_cfg):
        client = _client()
        client.post_order.return_value = {"success": False, "errorMsg": "not enough balance"}
        ex = TradingExecutor(client, replace(default_cfg, dry_run=False))
        with pytest.raises(RuntimeError, match="not enough balance"):
            ex.sell_at_price("y", D("0.01"), D("5"))


class TestInitClient:
    def test_dry_run_is_read_only(self):
        with patch("updown_arb.clob.ClobClient") as cls:
            init_client(True, Secrets())
        cls.assert_called_once_with("https://clob.polymarket.com", chain_id=137)

    def test_live_requires_key_and_proxy(self):
        with patch("updown_arb.clob.ClobClient") as cls:
            with pytest.raises(ValueError):
                init_client(False, Secrets(private_key="0xabc"))
        cls.assert_not_called()

    def test_live_uses_proxy_as_funder(self):
        secrets = Secrets(private_key="0xabc", proxy_address="0xproxy", signature_type=2)
        with patch("updown_arb.clob.ClobClient") as cls:
            client = init_client(False, secrets)
        kwargs = cls.call_args.kwargs
        assert kwargs["key"] == "0xabc"
        assert kwargs["funder"] == "0xproxy"
        assert kwargs["signature_type"] == 2
        assert kwargs["builder_config"] is None
        client.set_api_creds.assert_called_once_with(client.create_or_derive_api_creds.return_value)

    def test_builder_config_needs_all_three_creds(self):
        partial = Secrets(private_key="0xabc", proxy_address="0xproxy", builder_key="k", builder_secret="s")
        full = replace(partial, builder_passphrase="p")
        with patch("updown_arb.clob.ClobClient") as cls, \
                patch("updown_arb.clob.BuilderConfig") as builder_cls:
            init_client(False, partial)
            assert cls.call_args.kwargs["builder_config"] is None
            init_client(False, full)
        builder_cls.assert_called_once()
        assert cls.call_args.kwargs["builder_config"] is builder_cls.return_value
