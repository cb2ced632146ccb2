"""Live positions of the proxy wallet from the Polymarket Data API."""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

import requests

from updown_arb.models import ZERO, Position

log = logging.getLogger("ua.positions")

DATA_API_HOST = "https://data-api.polymarket.com"


def _dec(value) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return ZERO


def parse_position(row: dict) -> Position | None:
    asset = row.get("asset")
    condition_id = row.get("conditionId")
    if not asset or not condition_id:
        return None
    try:
        outcome_index = int(row.get("outcomeIndex", -1))
    except (TypeError, ValueError):
        outcome_index = -1
    return Position(
        asset=str(asset),
        condition_id=condition_id,
        outcome_index=outcome_index,
        size=_dec(row.get("size", 0)),
        cur_price=_dec(row.get("curPrice", 0)),
        title=row.get("title", ""),
    )


def get_positions(user: str, size_threshold: str = "0") -> list[Position]:
    """All open positions of *user*. Raises on transport or HTTP errors."""
    if not user:
        raise ValueError("POLYMARKET_PROXY_ADDRESS is not set")
    resp = requests.get(
        f"{DATA_API_HOST}/positions",
        params={"user": user, "sizeThreshold": size_threshold, "limit": 500},
        timeout=10,
    )
    resp.raise_for_status()
    rows = resp.json() or []
    positions = [p for p in (parse_position(r) for r in rows) if p is not None]
    log.debug("POSITIONS │ user=%s... │ rows=%d", user[:10], len(positions))
    return positions
