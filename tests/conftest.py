"""Shared fixtures for the Up/Down arbitrage tests."""

from __future__ import annotations

from decimal import Decimal

import pytest

from updown_arb.config import ArbConfig
from updown_arb.models import BookLevel, BookSnapshot, MarketInfo
from updown_arb.tracker import PositionTracker

WINDOW_START = 1_700_000_100  # a 5-minute boundary


@pytest.fixture
def default_cfg() -> ArbConfig:
    return ArbConfig(
        dry_run=True,
        crypto_symbols=("btc",),
        arbitrage_execution_spread=Decimal("0.01"),
        min_profit_threshold=Decimal("0.001"),
        max_order_size_usdc=Decimal("100"),
        risk_max_exposure_usdc=Decimal("1000"),
        min_trade_interval_secs=3.0,
        position_balance_threshold=Decimal("2"),
        position_balance_min_total=Decimal("5"),
    )


@pytest.fixture
def sample_market() -> MarketInfo:
    return MarketInfo(
        market_id="0xcond1",
        slug=f"btc-updown-5m-{WINDOW_START}",
        yes_token_id="111111",
        no_token_id="222222",
        title="Bitcoin Up or Down",
        crypto_symbol="btc",
        end_time=float(WINDOW_START + 300),
    )


@pytest.fixture
def tracker() -> PositionTracker:
    return PositionTracker(Decimal("1000"))


@pytest.fixture
def make_book():
    """Build a BookSnapshot from (price, size) string pairs."""
    def _make(asset_id, asks=(), bids=()):
        return BookSnapshot(
            asset_id=asset_id,
            asks=tuple(BookLevel(Decimal(p), Decimal(s)) for p, s in asks),
            bids=tuple(BookLevel(Decimal(p), Decimal(s)) for p, s in bids),
        )
    return _make
