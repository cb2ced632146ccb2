"""Order-book cache and Yes/No pairing."""

from __future__ import annotations

import logging
import threading
from typing import Optional

from updown_arb.models import BookSnapshot, MarketInfo, OrderBookPair, short_id

log = logging.getLogger("ua.orderbook")


class OrderBookPairer:
    """Caches the latest snapshot per token and pairs siblings on every update.

    Whichever side just updated is fresh; the other side comes from the cache
    and may be older. A pair is only produced once both sides have been seen.
    """

    def __init__(self) -> None:
        self._books: dict[str, BookSnapshot] = {}
        # token_id -> (market_id, yes_token_id, no_token_id)
        self._siblings: dict[str, tuple[str, str, str]] = {}
        self._lock = threading.Lock()

    def register_markets(self, markets: list[MarketInfo]) -> list[str]:
        """Map each market's tokens to their sibling. Returns all token ids."""
        token_ids: list[str] = []
        with self._lock:
            for m in markets:
                entry = (m.market_id, m.yes_token_id, m.no_token_id)
                self._siblings[m.yes_token_id] = entry
                self._siblings[m.no_token_id] = entry
                token_ids.extend((m.yes_token_id, m.no_token_id))
        return token_ids

    def process(self, book: BookSnapshot) -> Optional[OrderBookPair]:
        with self._lock:
            sibling = self._siblings.get(book.asset_id)
            if sibling is None:
                log.debug("BOOK_UNKNOWN %s │ not subscribed", short_id(book.asset_id))
                return None
            self._books[book.asset_id] = book

            market_id, yes_token, no_token = sibling
            yes_book = self._books.get(yes_token)
            no_book = self._books.get(no_token)
        if yes_book is None or no_book is None:
            return None
        return OrderBookPair(yes_book=yes_book, no_book=no_book, market_id=market_id)

    def get_book(self, token_id: str) -> Optional[BookSnapshot]:
        with self._lock:
            return self._books.get(token_id)

    def clear(self) -> None:
        with self._lock:
            self._books.clear()
            self._siblings.clear()
