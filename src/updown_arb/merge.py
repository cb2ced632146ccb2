"""Settlement of matched Up+Down holdings back into USDC.

OnchainSettler merges through the ProxyWalletFactory, since CLOB fills land in
the proxy wallet rather than the signer EOA. MergeScheduler runs it on an
interval, one market at a time, and releases the settled shares from the
position tracker.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Iterable

from eth_account import Account
from web3 import Web3

from updown_arb.events import EventType, emit
from updown_arb.models import C_GREEN, C_RESET, ZERO, Position, short_id
from updown_arb.tracker import PositionTracker

log = logging.getLogger("ua.merge")

# ── Contract addresses (Polygon mainnet) ──
CTF_ADDRESS = "0x4D97DCd97eC945f40cF65F87097ACe5EA0476045"
USDC_ADDRESS = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"
PROXY_WALLET_FACTORY = "0xaB45c5A4B0c941a2F231C04C3f49182e1A254052"
DEFAULT_RPC_URL = "https://polygon-rpc.com"

PARENT_COLLECTION_ID = bytes(32)
INDEX_SETS = [1, 2]  # 0b01 = Up, 0b10 = Down
CTF_DECIMALS = 6

DELAY_BETWEEN_MERGES_S = 30.0
RATE_LIMIT_BACKOFF_S = 12.0
INITIAL_DELAY_S = 10.0

MERGE_ABI = [
    {
        "name": "mergePositions",
        "type": "function",
        "inputs": [
            {"name": "collateralToken", "type": "address"},
            {"name": "parentCollectionId", "type": "bytes32"},
            {"name": "conditionId", "type": "bytes32"},
            {"name": "indexSets", "type": "uint256[]"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [],
    }
]

ERC1155_BALANCE_ABI = [
    {
        "name": "balanceOf",
        "type": "function",
        "inputs": [
            {"name": "account", "type": "address"},
            {"name": "id", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
]

PROXY_FACTORY_ABI = [
    {
        "name": "proxy",
        "type": "function",
        "inputs": [
            {
                "name": "calls",
                "type": "tuple[]",
                "components": [
                    {"name": "typeCode", "type": "uint8"},
                    {"name": "to", "type": "address"},
                    {"name": "value", "type": "uint256"},
                    {"name": "data", "type": "bytes"},
                ],
            }
        ],
        "outputs": [{"name": "", "type": "bytes[]"}],
    }
]


class NothingToMerge(Exception):
    """The wallet holds no matched shares for this condition."""


def is_rate_limited(exc: BaseException) -> bool:
    msg = str(exc).lower()
    return any(s in msg for s in ("rate limit", "retry in", "429", "too many requests"))


# ---------------------------------------------------------------------------
# Position selection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MergeInfo:
    yes_token_id: str
    no_token_id: str
    amount: Decimal  # min of the two sides


def _by_condition(positions: Iterable[Position]) -> dict[str, dict[int, Position]]:
    grouped: dict[str, dict[int, Position]] = {}
    for p in positions:
        if p.size <= ZERO:
            continue
        grouped.setdefault(p.condition_id, {})[p.outcome_index] = p
    return grouped


def condition_ids_with_both_sides(positions: Iterable[Position]) -> list[str]:
    """Conditions holding both outcomes, by either index convention (0/1 or 1/2)."""
    out = []
    for cid, by_idx in _by_condition(positions).items():
        idx = set(by_idx)
        if {0, 1} <= idx or {1, 2} <= idx:
            out.append(cid)
    return out


def merge_info_with_both_sides(positions: Iterable[Position]) -> dict[str, MergeInfo]:
    """condition_id -> tokens and mergeable amount. 1/2 wins over 0/1 when both fit."""
    out: dict[str, MergeInfo] = {}
    for cid, by_idx in _by_condition(positions).items():
        if 1 in by_idx and 2 in by_idx:
            yes, no = by_idx[1], by_idx[2]
        elif 0 in by_idx and 1 in by_idx:
            yes, no = by_idx[0], by_idx[1]
        else:
            continue
        out[cid] = MergeInfo(yes.asset, no.asset, min(yes.size, no.size))
    return out


def apply_settlement(tracker: PositionTracker, info: MergeInfo) -> None:
    """Release merged shares. Exposure goes first so it is priced off the pre-merge size."""
    tracker.update_exposure_cost(info.yes_token_id, ZERO, -info.amount)
    tracker.update_exposure_cost(info.no_token_id, ZERO, -info.amount)
    tracker.update_position(info.yes_token_id, -info.amount)
    tracker.update_position(info.no_token_id, -info.amount)


# ---------------------------------------------------------------------------
# On-chain settler
# ---------------------------------------------------------------------------

def _compute_position_id(condition_id_hex: str, index_set: int) -> int:
    """ERC1155 token id of one CTF outcome."""
    condition_bytes = bytes.fromhex(condition_id_hex.removeprefix("0x"))
    collection_id = Web3.solidity_keccak(
        ["bytes32", "bytes32", "uint256"],
        [PARENT_COLLECTION_ID, condition_bytes, index_set],
    )
    position_id = Web3.solidity_keccak(
        ["address", "bytes32"],
        [Web3.to_checksum_address(USDC_ADDRESS), collection_id],
    )
    return int.from_bytes(position_id, "big")


class OnchainSettler:
    """Blocking web3 merges; call through asyncio.to_thread."""

    def __init__(
        self,
        private_key: str,
        proxy_address: str,
        rpc_url: str = "",
        chain_id: int = 137,
        dry_run: bool = True,
    ):
        self._account = Account.from_key(private_key) if private_key else None
        self._proxy_address = proxy_address
        self._chain_id = chain_id
        self._dry_run = dry_run
        self._w3 = Web3(Web3.HTTPProvider(rpc_url or DEFAULT_RPC_URL))

    @property
    def signer_address(self) -> str:
        return self._account.address if self._account is not None else ""

    def _balances(self, condition_id: str) -> tuple[int, int]:
        ctf = self._w3.eth.contract(
            address=Web3.to_checksum_address(CTF_ADDRESS), abi=ERC1155_BALANCE_ABI,
        )
        holder = Web3.to_checksum_address(self._proxy_address)
        yes_bal = ctf.functions.balanceOf(holder, _compute_position_id(condition_id, 1)).call()
        no_bal = ctf.functions.balanceOf(holder, _compute_position_id(condition_id, 2)).call()
        return yes_bal, no_bal

    def merge_max(self, condition_id: str) -> str:
        """Merge min(up, down) shares of *condition_id*. Returns the tx hash."""
        if not condition_id:
            raise ValueError("condition_id is empty, cannot merge")
        if self._dry_run:
            log.info("DRY MERGE %s │ skipped on-chain call", short_id(condition_id))
            return "dry-run"

        yes_bal, no_bal = self._balances(condition_id)
        amount = min(yes_bal, no_bal)
        if amount <= 0:
            raise NothingToMerge(f"no mergeable shares for {condition_id} (up={yes_bal}, down={no_bal})")

        log.info("MERGE_INIT %s │ amount=%s │ proxy=%s...",
                 short_id(condition_id), Decimal(amount) / (10 ** CTF_DECIMALS),
                 self._proxy_address[:10])

        ctf = self._w3.eth.contract(address=Web3.to_checksum_address(CTF_ADDRESS), abi=MERGE_ABI)
        merge_data = ctf.encode_abi("mergePositions", [
            Web3.to_checksum_address(USDC_ADDRESS),
            PARENT_COLLECTION_ID,
            bytes.fromhex(condition_id.removeprefix("0x")),
            INDEX_SETS,
            amount,
        ])
        return self._send_proxy_tx(
            [(1, Web3.to_checksum_address(CTF_ADDRESS), 0, bytes.fromhex(merge_data[2:]))],
        )

    def _send_proxy_tx(self, inner_calls: list[tuple], gas: int = 500_000) -> str:
        w3 = self._w3
        account = self._account
        if account is None:
            raise RuntimeError("POLYMARKET_PRIVATE_KEY is required to send proxy transactions")
        factory = w3.eth.contract(
            address=Web3.to_checksum_address(PROXY_WALLET_FACTORY),
            abi=PROXY_FACTORY_ABI,
        )
        nonce = w3.eth.get_transaction_count(account.address, "pending")
        gas_price = w3.eth.gas_price

        tx = factory.functions.proxy(inner_calls).build_transaction({
            "from": account.address,
            "chainId": self._chain_id,
            "nonce": nonce,
            "gas": gas,
            "maxFeePerGas": gas_price * 2,
            "maxPriorityFeePerGas": w3.to_wei(30, "gwei"),
        })
        signed = account.sign_transaction(tx)
        tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        log.info("PROXY_TX_SENT tx=%s │ waiting for receipt (timeout=120s)", tx_hash.hex())
        receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=120)
        if receipt["status"] != 1:
            raise RuntimeError(f"Proxy tx reverted: {tx_hash.hex()}")
        return tx_hash.hex()


# ---------------------------------------------------------------------------
# Serial settlement (shared by the scheduler and wind-down)
# ---------------------------------------------------------------------------

async def settle_serially(
    settle: Callable[[str], str],
    positions: list[Position],
    tracker: PositionTracker,
    delay_between: float = DELAY_BETWEEN_MERGES_S,
    rate_limit_backoff: float = RATE_LIMIT_BACKOFF_S,
) -> int:
    """Merge every double-sided condition one after another. Returns the success count."""
    condition_ids = condition_ids_with_both_sides(positions)
    infos = merge_info_with_both_sides(positions)
    if not condition_ids:
        log.debug("MERGE_PASS │ no market holds both sides")
        return 0
    log.info("MERGE_PASS │ %d market(s) hold both sides", len(condition_ids))

    merged = 0
    for i, cid in enumerate(condition_ids):
        if i > 0:
            log.info("MERGE_WAIT │ %.0fs before market %d/%d", delay_between, i + 1, len(condition_ids))
            await asyncio.sleep(delay_between)
        try:
            try:
                tx = await asyncio.to_thread(settle, cid)
            except NothingToMerge:
                raise
            except Exception as e:
                if not is_rate_limited(e):
                    raise
                log.warning("MERGE_RATE_LIMITED %s │ retrying once in %.0fs", short_id(cid), rate_limit_backoff)
                await asyncio.sleep(rate_limit_backoff)
                tx = await asyncio.to_thread(settle, cid)
        except NothingToMerge as e:
            log.debug("MERGE_SKIP %s │ %s", short_id(cid), e)
            continue
        except Exception as e:
            log.warning("MERGE_FAIL %s │ %s", short_id(cid), e)
            emit(EventType.SETTLEMENT_RESULT, {"ok": False, "error": str(e)}, market_id=cid)
            continue

        merged += 1
        info = infos.get(cid)
        if info is not None:
            apply_settlement(tracker, info)
        amount = info.amount if info else ZERO
        log.info("%sMERGE_OK %s │ amount=%s │ tx=%s%s", C_GREEN, short_id(cid), amount, tx, C_RESET)
        emit(EventType.SETTLEMENT_RESULT, {"ok": True, "amount": str(amount), "tx": tx}, market_id=cid)
        await asyncio.sleep(0)
    return merged


class MergeScheduler:
    """Periodic merge pass. Idles while a wind-down owns the wallet."""

    def __init__(
        self,
        settle: Callable[[str], str],
        get_positions: Callable[[], Iterable[Position]],
        tracker: PositionTracker,
        wind_down_active: threading.Event,
        interval_minutes: int,
        initial_delay: float = INITIAL_DELAY_S,
        delay_between: float = DELAY_BETWEEN_MERGES_S,
        rate_limit_backoff: float = RATE_LIMIT_BACKOFF_S,
    ):
        self._settle = settle
        self._get_positions = get_positions
        self._tracker = tracker
        self._wind_down_active = wind_down_active
        self._interval = interval_minutes * 60
        self._initial_delay = initial_delay
        self._delay_between = delay_between
        self._rate_limit_backoff = rate_limit_backoff

    async def run_once(self) -> int:
        if self._wind_down_active.is_set():
            log.info("MERGE_PAUSED │ wind-down in progress")
            return 0
        try:
            positions = list(await asyncio.to_thread(self._get_positions))
        except Exception as e:
            log.warning("MERGE_POSITIONS_FAIL │ %s │ skipping this pass", e)
            return 0
        return await settle_serially(
            self._settle, positions, self._tracker,
            delay_between=self._delay_between,
            rate_limit_backoff=self._rate_limit_backoff,
        )

    async def run(self) -> None:
        # Let the main loop subscribe and start streaming first.
        await asyncio.sleep(self._initial_delay)
        while True:
            try:
                await self.run_once()
            except Exception as e:
                log.error("MERGE_TASK_ERROR │ %s", e)
            await asyncio.sleep(self._interval)
