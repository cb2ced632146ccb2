"""Configuration loading for the Up/Down arbitrage engine."""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

ORDER_TYPES = ("GTC", "GTD", "FOK", "FAK")
DEFAULT_SLIPPAGE = (Decimal("0"), Decimal("0.01"))


@dataclass(frozen=True)
class ArbConfig:
    dry_run: bool = True
    crypto_symbols: tuple[str, ...] = ("btc", "eth", "xrp", "sol")
    market_refresh_advance_secs: int = 5

    # Detection
    min_profit_threshold: Decimal = Decimal("0.001")
    arbitrage_execution_spread: Decimal = Decimal("0.01")
    max_order_size_usdc: Decimal = Decimal("100")

    # Execution
    slippage: tuple[Decimal, Decimal] = DEFAULT_SLIPPAGE  # [rising/flat, falling]
    arbitrage_order_type: str = "GTD"
    gtd_expiration_secs: int = 300
    min_trade_interval_secs: float = 3.0

    # Admission filters
    min_yes_price_threshold: Decimal = Decimal("0")
    min_no_price_threshold: Decimal = Decimal("0")
    stop_arbitrage_before_end_minutes: int = 0

    # Risk
    risk_max_exposure_usdc: Decimal = Decimal("1000")
    risk_imbalance_threshold: Decimal = Decimal("0.1")
    hedge_enabled: bool = False
    hedge_take_profit_pct: Decimal = Decimal("0.05")
    hedge_stop_loss_pct: Decimal = Decimal("0.05")

    # Background tasks
    merge_interval_minutes: int = 0  # 0 = disabled
    position_sync_interval_secs: int = 10
    position_balance_interval_secs: int = 60
    position_balance_threshold: Decimal = Decimal("2")
    position_balance_min_total: Decimal = Decimal("5")

    # Wind-down
    wind_down_before_window_end_minutes: int = 0  # 0 = disabled
    wind_down_sell_price: Decimal = Decimal("0.01")


@dataclass(frozen=True)
class Secrets:
    private_key: str = ""
    proxy_address: str = ""
    rpc_url: str = ""
    signature_type: int = 0
    builder_key: str = ""
    builder_secret: str = ""
    builder_passphrase: str = ""

    @property
    def has_builder_creds(self) -> bool:
        return bool(self.builder_key and self.builder_secret and self.builder_passphrase)


def parse_slippage(raw: Any) -> tuple[Decimal, Decimal]:
    """Parse "a,b" into (rising/flat slippage, falling slippage).

    A single value fills both slots; unparsable parts become 0.
    """
    if raw is None:
        return DEFAULT_SLIPPAGE
    if isinstance(raw, (list, tuple)):
        parts = [str(p) for p in raw]
    else:
        parts = [p for p in str(raw).split(",")]
    values: list[Decimal] = []
    for part in parts:
        part = part.strip()
        if not part:
            continue
        try:
            values.append(Decimal(part))
        except InvalidOperation:
            values.append(Decimal("0"))
    if not values:
        return DEFAULT_SLIPPAGE
    if len(values) == 1:
        return (values[0], values[0])
    return (values[0], values[1])


def parse_order_type(raw: Any) -> str:
    """Case-insensitive order type; anything unknown falls back to GTD."""
    s = str(raw or "").strip().upper()
    return s if s in ORDER_TYPES else "GTD"


def validate_config(cfg: ArbConfig) -> None:
    """Validate config values. Raises ValueError with all issues found."""
    errors: list[str] = []

    if not cfg.crypto_symbols:
        errors.append("crypto_symbols must not be empty")
    if cfg.max_order_size_usdc <= 0:
        errors.append(f"max_order_size_usdc must be > 0, got {cfg.max_order_size_usdc}")
    if not (0 <= cfg.arbitrage_execution_spread < 1):
        errors.append(
            f"arbitrage_execution_spread must be in [0, 1), got {cfg.arbitrage_execution_spread}"
        )
    if cfg.risk_max_exposure_usdc <= 0:
        errors.append(f"risk_max_exposure_usdc must be > 0, got {cfg.risk_max_exposure_usdc}")
    if cfg.risk_imbalance_threshold < 0:
        errors.append(f"risk_imbalance_threshold must be >= 0, got {cfg.risk_imbalance_threshold}")
    if cfg.position_balance_threshold <= 0:
        errors.append(
            f"position_balance_threshold must be > 0, got {cfg.position_balance_threshold}"
        )
    if cfg.market_refresh_advance_secs < 0:
        errors.append(
            f"market_refresh_advance_secs must be >= 0, got {cfg.market_refresh_advance_secs}"
        )
    if cfg.min_trade_interval_secs < 0:
        errors.append(f"min_trade_interval_secs must be >= 0, got {cfg.min_trade_interval_secs}")
    if not (Decimal("0") < cfg.wind_down_sell_price < Decimal("1")):
        errors.append(f"wind_down_sell_price must be in (0, 1), got {cfg.wind_down_sell_price}")
    for name in (
        "merge_interval_minutes",
        "position_sync_interval_secs",
        "position_balance_interval_secs",
        "wind_down_before_window_end_minutes",
        "stop_arbitrage_before_end_minutes",
        "gtd_expiration_secs",
    ):
        value = getattr(cfg, name)
        if value < 0:
            errors.append(f"{name} must be >= 0, got {value}")

    if errors:
        raise ValueError("Config validation failed:\n  " + "\n  ".join(errors))


def _dec(section: dict[str, Any], key: str, default: str) -> Decimal:
    return Decimal(str(section.get(key, default)))


def load_config(raw: dict[str, Any]) -> ArbConfig:
    """Load ArbConfig from config.yaml's updown_arb section."""
    ua = (raw or {}).get("updown_arb", {})
    if not ua:
        return ArbConfig()

    symbols = ua.get("crypto_symbols", ["btc", "eth", "xrp", "sol"])
    if isinstance(symbols, str):
        symbols = symbols.split(",")

    cfg = ArbConfig(
        dry_run=ua.get("dry_run", True),
        crypto_symbols=tuple(s.strip().lower() for s in symbols if s.strip()),
        market_refresh_advance_secs=int(ua.get("market_refresh_advance_secs", 5)),
        min_profit_threshold=_dec(ua, "min_profit_threshold", "0.001"),
        arbitrage_execution_spread=_dec(ua, "arbitrage_execution_spread", "0.01"),
        max_order_size_usdc=_dec(ua, "max_order_size_usdc", "100"),
        slippage=parse_slippage(ua.get("slippage")),
        arbitrage_order_type=parse_order_type(ua.get("arbitrage_order_type", "GTD")),
        gtd_expiration_secs=int(ua.get("gtd_expiration_secs", 300)),
        min_trade_interval_secs=float(ua.get("min_trade_interval_secs", 3.0)),
        min_yes_price_threshold=_dec(ua, "min_yes_price_threshold", "0"),
        min_no_price_threshold=_dec(ua, "min_no_price_threshold", "0"),
        stop_arbitrage_before_end_minutes=int(ua.get("stop_arbitrage_before_end_minutes", 0)),
        risk_max_exposure_usdc=_dec(ua, "risk_max_exposure_usdc", "1000"),
        risk_imbalance_threshold=_dec(ua, "risk_imbalance_threshold", "0.1"),
        hedge_enabled=ua.get("hedge_enabled", False),
        hedge_take_profit_pct=_dec(ua, "hedge_take_profit_pct", "0.05"),
        hedge_stop_loss_pct=_dec(ua, "hedge_stop_loss_pct", "0.05"),
        merge_interval_minutes=int(ua.get("merge_interval_minutes", 0)),
        position_sync_interval_secs=int(ua.get("position_sync_interval_secs", 10)),
        position_balance_interval_secs=int(ua.get("position_balance_interval_secs", 60)),
        position_balance_threshold=_dec(ua, "position_balance_threshold", "2"),
        position_balance_min_total=_dec(ua, "position_balance_min_total", "5"),
        wind_down_before_window_end_minutes=int(ua.get("wind_down_before_window_end_minutes", 0)),
        wind_down_sell_price=_dec(ua, "wind_down_sell_price", "0.01"),
    )
    validate_config(cfg)
    return cfg


def load_secrets() -> Secrets:
    """Read wallet credentials from the environment (.env is loaded by the caller)."""
    return Secrets(
        private_key=os.environ.get("POLYMARKET_PRIVATE_KEY", ""),
        proxy_address=os.environ.get("POLYMARKET_PROXY_ADDRESS", ""),
        rpc_url=os.environ.get("POLYGON_RPC_URL", ""),
        signature_type=int(os.environ.get("POLYMARKET_SIGNATURE_TYPE", "0")),
        builder_key=os.environ.get("POLYMARKET_BUILDER_KEY", ""),
        builder_secret=os.environ.get("POLYMARKET_BUILDER_SECRET", ""),
        builder_passphrase=os.environ.get("POLYMARKET_BUILDER_PASSPHRASE", ""),
    )
