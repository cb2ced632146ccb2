"""Polymarket CLOB access: client initialization and order execution."""

from __future__ import annotations

import logging
import time
import uuid
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from py_builder_signing_sdk.config import BuilderConfig
from py_builder_signing_sdk.sdk_types import BuilderApiKeyCreds
from py_clob_client.client import ClobClient
from py_clob_client.clob_types import OpenOrderParams, OrderArgs, OrderType, PostOrdersArgs
from py_clob_client.order_builder.constants import BUY, SELL

from updown_arb.config import ArbConfig, Secrets
from updown_arb.models import (
    C_GREEN,
    C_RED,
    C_RESET,
    C_YELLOW,
    ZERO,
    ArbitrageOpportunity,
    OpenOrder,
    OrderPairResult,
    SellResult,
    short_id,
)

log = logging.getLogger("ua.clob")

CLOB_HOST = "https://clob.polymarket.com"
CHAIN_ID = 137
END_CURSOR = "LTE="
MIN_PRICE = Decimal("0.01")
MAX_PRICE = Decimal("0.99")
DEFAULT_TICK = Decimal("0.01")
GTD_SAFETY_SECS = 60  # the venue rejects GTD expirations under one minute out

DIR_UP = "↑"
DIR_DOWN = "↓"
DIR_FLAT = "−"

_ORDER_TYPES = {
    "GTC": OrderType.GTC,
    "GTD": OrderType.GTD,
    "FOK": OrderType.FOK,
    "FAK": OrderType.FAK,
}


def _builder_config(secrets: Secrets) -> Optional[BuilderConfig]:
    """Builder attribution for fee rebates, when all three creds are set."""
    if not secrets.has_builder_creds:
        return None
    return BuilderConfig(
        local_builder_creds=BuilderApiKeyCreds(
            key=secrets.builder_key,
            secret=secrets.builder_secret,
            passphrase=secrets.builder_passphrase,
        ),
    )


def init_client(dry_run: bool, secrets: Secrets) -> ClobClient:
    """Read-only client for dry runs; otherwise an L2-authenticated trading client.

    Orders are signed by the private key and funded from the proxy wallet that
    also holds the positions the balancer, merger and wind-down read back.
    """
    if dry_run:
        log.info("INIT read-only client (DRY_RUN)")
        return ClobClient(CLOB_HOST, chain_id=CHAIN_ID)

    if not secrets.private_key or not secrets.proxy_address:
        raise ValueError("POLYMARKET_PRIVATE_KEY and POLYMARKET_PROXY_ADDRESS required for live trading")

    builder_config = _builder_config(secrets)
    client = ClobClient(
        CLOB_HOST,
        key=secrets.private_key,
        chain_id=CHAIN_ID,
        signature_type=secrets.signature_type,
        funder=secrets.proxy_address,
        builder_config=builder_config,
    )
    client.set_api_creds(client.create_or_derive_api_creds())
    log.info("INIT trading client ready │ funder=%s │ sig_type=%d │ builder=%s",
             short_id(secrets.proxy_address), secrets.signature_type, builder_config is not None)
    return client


def _dec(value: Any) -> Decimal:
    try:
        return Decimal(str(value)) if value not in (None, "") else ZERO
    except (InvalidOperation, ValueError):
        return ZERO


def round_to_tick(price: Decimal, tick: Decimal) -> Decimal:
    return (price / tick).quantize(Decimal("1"), rounding=ROUND_HALF_UP) * tick


def clamp_price(price: Decimal) -> Decimal:
    return max(MIN_PRICE, min(MAX_PRICE, price))


def slippage_for(direction: str, slippage: tuple[Decimal, Decimal]) -> Decimal:
    """Falling asks take the second slot; rising and flat take the first."""
    return slippage[1] if direction == DIR_DOWN else slippage[0]


def _filled_size(resp: Any, requested: Decimal) -> Decimal:
    """Shares matched immediately according to a post-order response."""
    if not isinstance(resp, dict) or not resp.get("success", True) or resp.get("errorMsg"):
        return ZERO
    if str(resp.get("status", "")).lower() != "matched":
        return ZERO
    taking = _dec(resp.get("takingAmount"))
    filled = taking if taking > ZERO else requested
    return min(filled, requested)


def _status(resp: Any) -> str:
    return str(resp.get("status", "?")) if isinstance(resp, dict) else "?"


def _order_id(resp: Any) -> str:
    if isinstance(resp, dict):
        return resp.get("orderID") or resp.get("orderId") or ""
    return ""


def parse_open_order(raw: dict) -> OpenOrder:
    return OpenOrder(
        order_id=raw.get("id", ""),
        asset_id=str(raw.get("asset_id", "")),
        side=str(raw.get("side", "")).upper(),
        price=_dec(raw.get("price")),
        original_size=_dec(raw.get("original_size")),
        size_matched=_dec(raw.get("size_matched")),
    )


class TradingExecutor:
    """Blocking order operations. The engine calls these through asyncio.to_thread."""

    def __init__(self, client: ClobClient, cfg: ArbConfig):
        self._client = client
        self._cfg = cfg
        self._dry_run = cfg.dry_run
        self._order_type = _ORDER_TYPES.get(cfg.arbitrage_order_type, OrderType.GTD)
        self._tick_cache: dict[str, Decimal] = {}

    def _tick_size(self, token_id: str) -> Decimal:
        tick = self._tick_cache.get(token_id)
        if tick is None:
            try:
                tick = Decimal(str(self._client.get_tick_size(token_id)))
            except Exception as e:
                log.debug("TICK_SIZE_FALLBACK %s │ %s", short_id(token_id), e)
                tick = DEFAULT_TICK
            self._tick_cache[token_id] = tick
        return tick

    def limit_price(self, token_id: str, ask: Decimal, direction: str) -> Decimal:
        raw = ask + slippage_for(direction, self._cfg.slippage)
        return clamp_price(round_to_tick(raw, self._tick_size(token_id)))

    def _expiration(self) -> int:
        if self._order_type != OrderType.GTD:
            return 0
        return int(time.time()) + GTD_SAFETY_SECS + self._cfg.gtd_expiration_secs

    # -----------------------------------------------------------------
    # Arbitrage
    # -----------------------------------------------------------------

    def execute_arbitrage_pair(
        self,
        opp: ArbitrageOpportunity,
        yes_direction: str = DIR_FLAT,
        no_direction: str = DIR_FLAT,
    ) -> OrderPairResult:
        """Post both BUY legs in a single batch."""
        pair_id = str(uuid.uuid4())[:8]
        size = opp.order_size.quantize(Decimal("0.01"), rounding=ROUND_DOWN)
        yes_price = self.limit_price(opp.yes_token_id, opp.yes_ask_price, yes_direction)
        no_price = self.limit_price(opp.no_token_id, opp.no_ask_price, no_direction)
        label = (f"pair={pair_id} │ yes {yes_price}{yes_direction} no {no_price}{no_direction} "
                 f"x{size} │ {self._cfg.arbitrage_order_type}")

        if self._dry_run:
            log.info("DRY ARB %s", label)
            stamp = int(time.time() * 1000)
            return OrderPairResult(
                pair_id=pair_id,
                yes_order_id=f"dry-{stamp}-yes",
                no_order_id=f"dry-{stamp}-no",
                yes_size=size,
                no_size=size,
                yes_filled=size,
                no_filled=size,
            )

        expiration = self._expiration()
        orders = []
        for token_id, price in ((opp.yes_token_id, yes_price), (opp.no_token_id, no_price)):
            signed = self._client.create_order(OrderArgs(
                token_id=token_id,
                price=float(price),
                size=float(size),
                side=BUY,
                expiration=expiration,
            ))
            orders.append(PostOrdersArgs(order=signed, orderType=self._order_type))

        log.info("PLACE ARB %s", label)
        resp = self._client.post_orders(orders)
        if not isinstance(resp, list) or len(resp) != 2:
            raise RuntimeError(f"unexpected batch response for pair {pair_id}: {resp!r}")
        yes_resp, no_resp = resp

        result = OrderPairResult(
            pair_id=pair_id,
            yes_order_id=_order_id(yes_resp),
            no_order_id=_order_id(no_resp),
            yes_size=size,
            no_size=size,
            yes_filled=_filled_size(yes_resp, size),
            no_filled=_filled_size(no_resp, size),
        )
        if result.yes_filled > ZERO and result.no_filled > ZERO:
            color = C_GREEN
        elif result.yes_filled > ZERO or result.no_filled > ZERO:
            color = C_YELLOW
        else:
            color = C_RED
        log.info("%sPLACED ARB pair=%s │ yes filled=%s (%s) │ no filled=%s (%s)%s",
                 color, pair_id,
                 result.yes_filled, _status(yes_resp),
                 result.no_filled, _status(no_resp),
                 C_RESET)
        return result

    # -----------------------------------------------------------------
    # Cancellation and order listing
    # -----------------------------------------------------------------

    def cancel_all_orders(self) -> None:
        if self._dry_run:
            log.info("DRY CANCEL_ALL")
            return
        self._client.cancel_all()
        log.info("CANCEL_ALL sent")

    def cancel_orders(self, order_ids: list[str]) -> None:
        if not order_ids:
            return
        if self._dry_run:
            log.info("DRY CANCEL %d order(s)", len(order_ids))
            return
        self._client.cancel_orders(order_ids)
        log.info("CANCEL %d order(s)", len(order_ids))

    def list_open_orders(self, cursor: Optional[str] = None) -> tuple[list[OpenOrder], str]:
        """Open orders from *cursor* on. The SDK walks every page itself, so the
        returned cursor is always the end marker."""
        if self._dry_run:
            return [], END_CURSOR
        kwargs = {"next_cursor": cursor} if cursor else {}
        raw = self._client.get_orders(OpenOrderParams(), **kwargs)
        return [parse_open_order(o) for o in raw or []], END_CURSOR

    # -----------------------------------------------------------------
    # Selling
    # -----------------------------------------------------------------

    def sell_at_price(self, token_id: str, price: Decimal, size: Decimal) -> SellResult:
        """GTC SELL limit order."""
        price = clamp_price(price)
        label = f"{short_id(token_id)} @ {price} x{size}"
        if self._dry_run:
            log.info("DRY SELL %s", label)
            return SellResult(order_id=f"dry-{int(time.time() * 1000)}", filled=size, remaining=ZERO)

        signed = self._client.create_order(OrderArgs(
            token_id=token_id,
            price=float(price),
            size=float(size),
            side=SELL,
        ))
        resp = self._client.post_order(signed, OrderType.GTC)
        if isinstance(resp, dict) and (resp.get("success") is False or resp.get("errorMsg")):
            raise RuntimeError(f"sell rejected {label}: {resp.get('errorMsg') or resp}")
        order_id = _order_id(resp)
        filled = ZERO
        if isinstance(resp, dict) and str(resp.get("status", "")).lower() == "matched":
            # For a SELL the making side is the shares given up.
            making = _dec(resp.get("makingAmount"))
            filled = min(making if making > ZERO else size, size)
        log.info("SELL %s │ order=%s │ filled=%s", label, order_id, filled)
        return SellResult(order_id=order_id, filled=filled, remaining=size - filled)
