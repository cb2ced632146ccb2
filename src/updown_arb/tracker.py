"""Position and exposure tracking: the single source of truth for risk state.

Every writer (trade completion, settlement, balancer, position sync, hedge
exits) goes through this class. Records are striped across per-token locks so
concurrent writers on different tokens never serialize on each other; every
read-modify-write on one token is atomic under that token's lock.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Iterable

from updown_arb.models import ZERO, Position, short_id

log = logging.getLogger("ua.tracker")


@dataclass
class PositionRecord:
    size: Decimal = ZERO
    exposure: Decimal = ZERO  # speculative cost charged at submission


class PositionTracker:
    def __init__(
        self,
        max_exposure: Decimal,
        fetch_positions: Callable[[], Iterable[Position]] | None = None,
    ):
        self._max_exposure = max_exposure
        self._fetch_positions = fetch_positions
        self._records: dict[str, PositionRecord] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()  # protects the two dicts' key sets only

    @property
    def max_exposure(self) -> Decimal:
        return self._max_exposure

    def _entry(self, token_id: str) -> tuple[threading.Lock, PositionRecord]:
        with self._guard:
            lock = self._locks.get(token_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[token_id] = lock
                self._records[token_id] = PositionRecord()
            return lock, self._records[token_id]

    # -----------------------------------------------------------------
    # Mutations
    # -----------------------------------------------------------------

    def update_position(self, token_id: str, delta: Decimal) -> Decimal:
        """Add *delta* to the token's position. Returns the new size."""
        lock, rec = self._entry(token_id)
        with lock:
            rec.size += delta
            new_size = rec.size
        log.debug("POSITION %s │ Δ=%s │ size=%s", short_id(token_id), delta, new_size)
        return new_size

    def update_exposure_cost(self, token_id: str, price: Decimal, delta_size: Decimal) -> Decimal:
        """Add price × delta_size to the token's exposure accumulator.

        A zero price with a negative delta releases exposure at the token's
        average cost (exposure / size); this is how settlement unwinds a leg
        without knowing the entry fill prices, and it never drives the
        accumulator below zero.
        """
        lock, rec = self._entry(token_id)
        with lock:
            if price == ZERO and delta_size < ZERO:
                if rec.size > ZERO:
                    released = rec.exposure * (-delta_size) / rec.size
                else:
                    released = rec.exposure
                rec.exposure = max(ZERO, rec.exposure - released)
            else:
                rec.exposure += price * delta_size
            new_exposure = rec.exposure
        log.debug("EXPOSURE %s │ price=%s Δ=%s │ exposure=%s",
                  short_id(token_id), price, delta_size, new_exposure)
        return new_exposure

    def reset_exposure(self) -> None:
        """Zero every exposure accumulator. Positions are untouched."""
        with self._guard:
            entries = [(self._locks[t], self._records[t]) for t in self._records]
        for lock, rec in entries:
            with lock:
                rec.exposure = ZERO
        log.info("EXPOSURE_RESET │ tokens=%d", len(entries))

    def sync_from_api(self) -> int:
        """Overwrite local sizes with the authoritative positions.

        Tokens we know about but the source no longer reports go to zero.
        Exposure is never touched. Returns the number of tokens written.
        """
        if self._fetch_positions is None:
            return 0
        remote: dict[str, Decimal] = {}
        for pos in self._fetch_positions():
            remote[pos.asset] = remote.get(pos.asset, ZERO) + pos.size

        with self._guard:
            known = list(self._records)
        for token_id in set(known) | set(remote):
            lock, rec = self._entry(token_id)
            with lock:
                rec.size = remote.get(token_id, ZERO)
        log.debug("POSITION_SYNC │ remote=%d │ local=%d", len(remote), len(known))
        return len(remote)

    # -----------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------

    def get_position(self, token_id: str) -> Decimal:
        with self._guard:
            lock = self._locks.get(token_id)
            rec = self._records.get(token_id)
        if lock is None:
            return ZERO
        with lock:
            return rec.size

    def get_exposure(self, token_id: str) -> Decimal:
        with self._guard:
            lock = self._locks.get(token_id)
            rec = self._records.get(token_id)
        if lock is None:
            return ZERO
        with lock:
            return rec.exposure

    def get_pair_positions(self, yes_token: str, no_token: str) -> tuple[Decimal, Decimal]:
        return self.get_position(yes_token), self.get_position(no_token)

    def calculate_exposure(self) -> Decimal:
        with self._guard:
            entries = [(self._locks[t], self._records[t]) for t in self._records]
        total = ZERO
        for lock, rec in entries:
            with lock:
                total += rec.exposure
        return total

    def would_exceed_limit(self, yes_cost: Decimal, no_cost: Decimal) -> bool:
        return self.calculate_exposure() + yes_cost + no_cost > self._max_exposure
