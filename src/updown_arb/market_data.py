"""Market discovery for 5-minute Up/Down markets via the Gamma API."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Optional

import requests

from updown_arb.models import MarketInfo

log = logging.getLogger("ua.market_data")

GAMMA_HOST = "https://gamma-api.polymarket.com"


def market_slugs(symbols: tuple[str, ...] | list[str], window_ts: int) -> list[str]:
    return [f"{symbol}-updown-5m-{window_ts}" for symbol in symbols]


def _parse_json_field(value) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return []
    return []


def _parse_end_time(value) -> Optional[float]:
    if not value:
        return None
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        return datetime.fromisoformat(value).timestamp()
    except (ValueError, TypeError, AttributeError):
        return None


def parse_market(raw: dict) -> Optional[MarketInfo]:
    """Gamma market row -> MarketInfo, or None when it is not tradable."""
    if not (raw.get("active") and raw.get("enableOrderBook") and raw.get("acceptingOrders")):
        return None

    outcomes = _parse_json_field(raw.get("outcomes"))
    if len(outcomes) != 2 or "Up" not in outcomes or "Down" not in outcomes:
        return None

    token_ids = [str(t) for t in _parse_json_field(raw.get("clobTokenIds"))]
    if len(token_ids) != 2 or token_ids[0] == token_ids[1]:
        return None

    condition_id = raw.get("conditionId")
    slug = raw.get("slug")
    end_time = _parse_end_time(raw.get("endDate"))
    if not condition_id or not slug or end_time is None:
        return None

    return MarketInfo(
        market_id=condition_id,
        slug=slug,
        yes_token_id=token_ids[0],
        no_token_id=token_ids[1],
        title=raw.get("question") or "",
        crypto_symbol=slug.split("-")[0],
        end_time=end_time,
    )


def lookup_markets(symbols: tuple[str, ...] | list[str], window_ts: int) -> list[MarketInfo]:
    """Live markets for one window. Request failures come back as an empty list."""
    slugs = market_slugs(symbols, window_ts)
    log.info("MARKET_LOOKUP │ window=%d │ slugs=%d", window_ts, len(slugs))
    try:
        resp = requests.get(f"{GAMMA_HOST}/markets", params={"slug": slugs}, timeout=10)
        resp.raise_for_status()
        rows = resp.json()
    except (requests.RequestException, ValueError) as e:
        log.warning("MARKET_LOOKUP_FAIL │ window=%d │ %s", window_ts, e)
        return []

    markets: list[MarketInfo] = []
    seen_tokens: set[str] = set()
    for row in rows or []:
        market = parse_market(row)
        if market is None:
            continue
        if market.yes_token_id in seen_tokens or market.no_token_id in seen_tokens:
            continue
        seen_tokens.update((market.yes_token_id, market.no_token_id))
        markets.append(market)

    log.info("MARKET_LOOKUP │ window=%d │ found=%d", window_ts, len(markets))
    return markets
