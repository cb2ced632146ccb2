"""Public CLOB market WebSocket: full order-book snapshots per token."""

from __future__ import annotations

import json
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import AsyncIterator, Iterable

import websockets

from updown_arb.models import BookLevel, BookSnapshot

log = logging.getLogger("ua.book_stream")

MARKET_WS_URL = "wss://ws-subscriptions-clob.polymarket.com/ws/market"


def _levels(raw_levels) -> tuple[BookLevel, ...]:
    levels = []
    for lvl in raw_levels or []:
        try:
            levels.append(BookLevel(price=Decimal(str(lvl["price"])), size=Decimal(str(lvl["size"]))))
        except (KeyError, TypeError, InvalidOperation):
            continue
    return tuple(levels)


def _timestamp(value) -> float:
    try:
        ts = float(value)
    except (TypeError, ValueError):
        return time.time()
    return ts / 1000.0 if ts > 1e11 else ts  # venue sends milliseconds


def parse_book_message(raw: str | bytes) -> list[BookSnapshot]:
    """Decode one WS frame. Non-book events and heartbeats yield nothing."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return []  # PONG and other plain-text frames

    items = payload if isinstance(payload, list) else [payload]
    books = []
    for item in items:
        if not isinstance(item, dict) or item.get("event_type") != "book":
            continue
        asset_id = item.get("asset_id")
        if not asset_id:
            continue
        books.append(BookSnapshot(
            asset_id=str(asset_id),
            market=item.get("market", ""),
            bids=_levels(item.get("bids") or item.get("buys")),
            asks=_levels(item.get("asks") or item.get("sells")),
            timestamp=_timestamp(item.get("timestamp")),
        ))
    return books


def subscribe_order_books(token_ids: Iterable[str]) -> AsyncIterator[BookSnapshot]:
    """Stream book snapshots for *token_ids*. Ends when the socket closes."""
    tokens = [t for t in token_ids if t]
    if not tokens:
        raise ValueError("subscribe_order_books needs at least one token id")
    return _stream(tokens)


async def _stream(tokens: list[str]) -> AsyncIterator[BookSnapshot]:
    log.info("BOOK_WS │ connecting │ tokens=%d", len(tokens))
    async with websockets.connect(MARKET_WS_URL, ping_interval=20, ping_timeout=10) as ws:
        await ws.send(json.dumps({"assets_ids": tokens, "type": "market"}))
        log.info("BOOK_WS │ subscribed")
        async for msg in ws:
            for book in parse_book_message(msg):
                yield book
    log.warning("BOOK_WS │ connection closed")
