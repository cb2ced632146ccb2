"""Data structures for the 5-minute Up/Down arbitrage engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

# Shared Decimal constants
ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")
MIN_TRADABLE = Decimal("0.01")

# ANSI colors for log highlights
C_GREEN = "\033[32m"
C_RED = "\033[31m"
C_YELLOW = "\033[33m"
C_RESET = "\033[0m"


def short_id(value: str) -> str:
    """Shorten a token/condition id for log lines: keep the tail."""
    return f"..{value[-8:]}" if len(value) > 12 else value


@dataclass(frozen=True)
class MarketInfo:
    market_id: str  # condition id
    slug: str
    yes_token_id: str  # "Up" outcome
    no_token_id: str  # "Down" outcome
    title: str
    crypto_symbol: str
    end_time: float  # epoch seconds

    @property
    def display_name(self) -> str:
        if self.crypto_symbol:
            return f"{self.crypto_symbol} market"
        return self.title or self.slug


@dataclass(frozen=True)
class BookLevel:
    price: Decimal
    size: Decimal


@dataclass(frozen=True)
class BookSnapshot:
    asset_id: str
    market: str = ""
    bids: tuple[BookLevel, ...] = ()
    asks: tuple[BookLevel, ...] = ()
    timestamp: float = 0.0

    def best_ask(self) -> Optional[BookLevel]:
        # The venue does not guarantee level order, so scan for the lowest ask.
        if not self.asks:
            return None
        return min(self.asks, key=lambda lvl: lvl.price)

    def best_bid(self) -> Optional[BookLevel]:
        if not self.bids:
            return None
        return max(self.bids, key=lambda lvl: lvl.price)


@dataclass(frozen=True)
class OrderBookPair:
    yes_book: BookSnapshot
    no_book: BookSnapshot
    market_id: str


@dataclass(frozen=True)
class ArbitrageOpportunity:
    market_id: str
    yes_token_id: str
    no_token_id: str
    yes_ask_price: Decimal
    no_ask_price: Decimal
    yes_size: Decimal
    no_size: Decimal
    total_cost: Decimal
    profit_percentage: Decimal
    order_size: Decimal

    @property
    def yes_cost(self) -> Decimal:
        return self.yes_ask_price * self.order_size

    @property
    def no_cost(self) -> Decimal:
        return self.no_ask_price * self.order_size


class PairStatus(Enum):
    SUBMITTED = "SUBMITTED"
    BOTH_FILLED = "BOTH_FILLED"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    ONE_FAILED = "ONE_FAILED"
    BOTH_FAILED = "BOTH_FAILED"
    RECOVERING = "RECOVERING"
    RESOLVED = "RESOLVED"


@dataclass(frozen=True)
class OrderPairResult:
    """What the executor reports back after submitting both legs."""

    pair_id: str
    yes_order_id: str
    no_order_id: str
    yes_size: Decimal
    no_size: Decimal
    yes_filled: Decimal
    no_filled: Decimal


@dataclass
class OrderPair:
    pair_id: str
    market_id: str
    yes_order_id: str
    no_order_id: str
    yes_token_id: str
    no_token_id: str
    yes_size: Decimal
    no_size: Decimal
    yes_filled: Decimal
    no_filled: Decimal
    status: PairStatus
    created_at: float  # time.time()
    yes_price: Decimal = ZERO
    no_price: Decimal = ZERO

    def __post_init__(self) -> None:
        self.yes_filled = max(ZERO, min(self.yes_filled, self.yes_size))
        self.no_filled = max(ZERO, min(self.no_filled, self.no_size))


# ---------------------------------------------------------------------------
# Recovery actions: a closed family, every consumer handles all four.
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NoAction:
    pass


@dataclass(frozen=True)
class SellExcess:
    token_id: str
    amount: Decimal


@dataclass(frozen=True)
class MonitorForExit:
    token_id: str
    opposite_token_id: str
    amount: Decimal
    entry_price: Decimal
    take_profit_pct: Decimal
    stop_loss_pct: Decimal
    pair_id: str
    market_display: str


@dataclass(frozen=True)
class ManualIntervention:
    reason: str


RecoveryAction = NoAction | SellExcess | MonitorForExit | ManualIntervention


@dataclass
class HedgePosition:
    token_id: str
    opposite_token_id: str
    amount: Decimal
    entry_price: Decimal
    take_profit_price: Decimal
    stop_loss_price: Decimal
    pair_id: str
    market_display: str
    order_id: Optional[str] = None
    pending_sell_amount: Decimal = field(default_factory=lambda: Decimal("0"))


# ---------------------------------------------------------------------------
# External account data
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Position:
    """One row of the Data API positions response."""

    asset: str
    condition_id: str
    outcome_index: int
    size: Decimal
    cur_price: Decimal = ZERO
    title: str = ""


@dataclass(frozen=True)
class OpenOrder:
    order_id: str
    asset_id: str
    side: str
    price: Decimal
    original_size: Decimal
    size_matched: Decimal = ZERO

    @property
    def pending_size(self) -> Decimal:
        return self.original_size - self.size_matched


@dataclass(frozen=True)
class OrderInfo:
    order_id: str
    price: Decimal
    pending_size: Decimal


@dataclass
class MarketBalanceData:
    condition_id: str
    yes_token_id: str
    no_token_id: str
    yes_position: Decimal = field(default_factory=lambda: Decimal("0"))
    no_position: Decimal = field(default_factory=lambda: Decimal("0"))
    yes_orders: list[OrderInfo] = field(default_factory=list)
    no_orders: list[OrderInfo] = field(default_factory=list)

    @property
    def yes_pending(self) -> Decimal:
        return sum((o.pending_size for o in self.yes_orders), ZERO)

    @property
    def no_pending(self) -> Decimal:
        return sum((o.pending_size for o in self.no_orders), ZERO)


@dataclass(frozen=True)
class SellResult:
    order_id: str
    filled: Decimal
    remaining: Decimal
