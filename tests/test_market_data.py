"""Tests for market_data.py — Gamma row parsing and lookup."""

from unittest.mock import MagicMock, patch

import requests

from updown_arb.market_data import lookup_markets, market_slugs, parse_market

from conftest import WINDOW_START


def _row(**overrides):
    row = {
        "active": True,
        "enableOrderBook": True,
        "acceptingOrders": True,
        "conditionId": "0xcond1",
        "slug": f"btc-updown-5m-{WINDOW_START}",
        "question": "Bitcoin Up or Down",
        "outcomes": '["Up", "Down"]',
        "clobTokenIds": '["111111", "222222"]',
        "endDate": "2023-11-14T22:20:00Z",
    }
    row.update(overrides)
    return row


class TestMarketSlugs:
    def test_one_slug_per_symbol(self):
        assert market_slugs(("btc", "eth"), WINDOW_START) == [
            f"btc-updown-5m-{WINDOW_START}",
            f"eth-updown-5m-{WINDOW_START}",
        ]


class TestParseMarket:
    def test_valid_row(self):
        m = parse_market(_row())
        assert m.market_id == "0xcond1"
        assert m.yes_token_id == "111111"
        assert m.no_token_id == "222222"
        assert m.crypto_symbol == "btc"
        assert m.end_time == 1700000400.0
        assert m.display_name == "btc market"

    def test_list_fields_accepted(self):
        m = parse_market(_row(outcomes=["Up", "Down"], clobTokenIds=["1", "2"]))
        assert (m.yes_token_id, m.no_token_id) == ("1", "2")

    def test_not_accepting_orders(self):
        assert parse_market(_row(acceptingOrders=False)) is None

    def test_wrong_outcomes(self):
        assert parse_market(_row(outcomes='["Yes", "No"]')) is None

    def test_duplicate_tokens(self):
        assert parse_market(_row(clobTokenIds='["1", "1"]')) is None

    def test_missing_end_date(self):
        assert parse_market(_row(endDate=None)) is None

    def test_bad_json(self):
        assert parse_market(_row(clobTokenIds="not json")) is None


class TestLookupMarkets:
    def test_deduplicates_tokens(self):
        resp = MagicMock()
        resp.json.return_value = [_row(), _row(conditionId="0xdup"), _row(active=False)]
        with patch("updown_arb.market_data.requests.get", return_value=resp) as get:
            markets = lookup_markets(("btc",), WINDOW_START)
        assert [m.market_id for m in markets] == ["0xcond1"]
        assert get.call_args.kwargs["params"] == {"slug": [f"btc-updown-5m-{WINDOW_START}"]}

    def test_request_error_gives_empty(self):
        with patch("updown_arb.market_data.requests.get",
                   side_effect=requests.ConnectionError("down")):
            assert lookup_markets(("btc",), WINDOW_START) == []
