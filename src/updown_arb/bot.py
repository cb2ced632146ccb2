"""Entry point for the 5-minute Up/Down arbitrage engine."""

import argparse
import asyncio
import functools
import logging
import re
import sys
import threading
from datetime import datetime
from pathlib import Path

import yaml
from dotenv import load_dotenv

from updown_arb.balancer import PositionBalancer
from updown_arb.book_stream import subscribe_order_books
from updown_arb.clob import TradingExecutor, init_client
from updown_arb.config import ArbConfig, Secrets, load_config, load_secrets
from updown_arb.engine import Orchestrator
from updown_arb.events import consume, get_drop_count, get_drop_counts, init_event_bus, shutdown_event_bus
from updown_arb.hedge import HedgeMonitor
from updown_arb.market_data import lookup_markets
from updown_arb.merge import MergeScheduler, OnchainSettler
from updown_arb.models import C_RESET, C_YELLOW
from updown_arb.positions import get_positions
from updown_arb.recovery import HedgeOnExitStrategy, RecoveryStrategy
from updown_arb.risk_manager import RiskManager
from updown_arb.scheduler import MarketScheduler
from updown_arb.tracker import PositionTracker
from updown_arb.wind_down import WindDownSequencer

LOG_FORMAT = "%(asctime)s │ %(name)-16s │ %(message)s"


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="5-minute Up/Down arbitrage engine")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "debug", "info", "warning", "error"],
        help="Root log level (default: INFO)",
    )
    parser.add_argument("--config", default="config.yaml", help="Path to config.yaml")
    return parser.parse_args()


class _StripAnsiFormatter(logging.Formatter):
    """Strip ANSI escape codes for clean log files."""
    _ansi_re = re.compile(r'\033\[[0-9;]*m')

    def format(self, record):
        result = super().format(record)
        return self._ansi_re.sub('', result)


class _ColorFormatter(logging.Formatter):
    """Dim DEBUG lines on the console for visual hierarchy."""
    _DIM = "\033[2m"
    _RESET = "\033[0m"

    def format(self, record):
        result = super().format(record)
        if record.levelno <= logging.DEBUG:
            return f"{self._DIM}{result}{self._RESET}"
        return result


def _setup_logging(level_str: str, dry_run: bool = True, log_root: Path = Path("logs")) -> Path:
    level = getattr(logging, level_str.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%H:%M:%S")

    for h in logging.getLogger().handlers:
        if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler):
            h.setFormatter(_ColorFormatter(fmt=LOG_FORMAT, datefmt="%H:%M:%S"))

    # File handler: separate directories for dry and live runs
    log_dir = log_root / ("dry" if dry_run else "live")
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"updown_arb_{datetime.now():%Y-%m-%d_%H%M%S}.log"
    fh = logging.FileHandler(log_file)
    fh.setLevel(level)
    fh.setFormatter(_StripAnsiFormatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logging.getLogger().addHandler(fh)

    for noisy in ("urllib3", "requests", "py_clob_client", "web3", "websockets", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return log_file


log = logging.getLogger("ua.bot")


def _no_positions() -> list:
    return []


def build_engine(cfg: ArbConfig, secrets: Secrets, client) -> Orchestrator:
    """Wire every component around one shared position tracker."""
    executor = TradingExecutor(client, cfg)

    if secrets.proxy_address:
        fetch_positions = functools.partial(get_positions, secrets.proxy_address)
    else:
        log.warning("INIT POLYMARKET_PROXY_ADDRESS not set, position data disabled")
        fetch_positions = _no_positions

    tracker = PositionTracker(
        cfg.risk_max_exposure_usdc,
        fetch_positions if secrets.proxy_address else None,
    )

    recovery_cls = HedgeOnExitStrategy if cfg.hedge_enabled else RecoveryStrategy
    recovery = recovery_cls(
        imbalance_threshold=cfg.risk_imbalance_threshold,
        take_profit_pct=cfg.hedge_take_profit_pct,
        stop_loss_pct=cfg.hedge_stop_loss_pct,
    )
    risk = RiskManager(tracker, recovery)

    balancer = PositionBalancer(
        tracker,
        list_open_orders=executor.list_open_orders,
        get_positions=fetch_positions,
        cancel_orders=executor.cancel_orders,
        threshold=cfg.position_balance_threshold,
        min_total=cfg.position_balance_min_total,
    )

    settler = None
    if secrets.proxy_address and (cfg.dry_run or secrets.private_key):
        settler = OnchainSettler(
            private_key=secrets.private_key,
            proxy_address=secrets.proxy_address,
            rpc_url=secrets.rpc_url,
            dry_run=cfg.dry_run,
        )
        if settler.signer_address:
            log.info("INIT Web3+Account ready for on-chain merge (addr=%s)", settler.signer_address)
    else:
        log.warning("INIT merge disabled (needs POLYMARKET_PROXY_ADDRESS and a private key)")

    wind_down_active = threading.Event()
    merge_scheduler = None
    if settler is not None:
        merge_scheduler = MergeScheduler(
            settler.merge_max, fetch_positions, tracker, wind_down_active,
            interval_minutes=cfg.merge_interval_minutes,
        )

    wind_down = WindDownSequencer(
        tracker,
        wind_down_active,
        cancel_all=executor.cancel_all_orders,
        get_positions=fetch_positions,
        sell_at_price=executor.sell_at_price,
        settle=settler.merge_max if settler is not None else None,
        minutes_before_end=cfg.wind_down_before_window_end_minutes,
        sell_price=cfg.wind_down_sell_price,
    )

    hedge = HedgeMonitor(tracker, executor.sell_at_price) if cfg.hedge_enabled else None
    scheduler = MarketScheduler(lookup_markets, cfg.crypto_symbols, cfg.market_refresh_advance_secs)

    return Orchestrator(
        cfg,
        scheduler,
        subscribe_order_books,
        executor,
        tracker,
        risk,
        balancer,
        wind_down,
        wind_down_active,
        merge_scheduler=merge_scheduler,
        hedge=hedge,
    )


def main():
    args = _parse_args()
    load_dotenv()

    with open(args.config) as f:
        raw_cfg = yaml.safe_load(f)

    cfg = load_config(raw_cfg)
    log_file = _setup_logging(args.log_level, dry_run=cfg.dry_run)
    log.info("INIT mode=%s │ symbols=%s │ log=%s",
             "DRY" if cfg.dry_run else "LIVE", ",".join(cfg.crypto_symbols), log_file)

    secrets = load_secrets()
    client = init_client(cfg.dry_run, secrets)
    engine = build_engine(cfg, secrets, client)

    try:
        asyncio.run(_run_all(engine))
    except KeyboardInterrupt:
        log.info("%sSHUTDOWN user interrupt%s", C_YELLOW, C_RESET)
        sys.exit(0)


async def _run_all(engine: Orchestrator) -> None:
    """Run the engine alongside the event dispatcher."""
    init_event_bus()

    async def _event_dispatcher():
        while True:
            try:
                event = await consume()
                log.debug("EVENT %s │ window=%d │ market=%s │ %s",
                          event.type.value, event.window_start, event.market_id, event.data)
            except Exception as e:
                log.error("EVENT_DISPATCH │ error: %s", e)

    try:
        await asyncio.gather(engine.run(), _event_dispatcher())
    finally:
        dropped = get_drop_count()
        if dropped:
            by_type = ", ".join(f"{t.value}={n}" for t, n in get_drop_counts().items())
            log.warning("EVENT_BUS │ %d events dropped this session │ %s", dropped, by_type)
        shutdown_event_bus()


if __name__ == "__main__":
    main()
