"""
Chain-level data models shared across the engine.

Pending transactions, decoded swaps, pool reserve snapshots, token safety
verdicts and the bundle/submission records handed from the builder to the
submission gateway.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from eth_utils import keccak


def to_hex_str(value: Any) -> str:
    """Normalize a hash/address/bytes value to a lowercase 0x-prefixed string."""
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def to_bytes(value: Any) -> bytes:
    """Normalize call data given either as bytes or as a hex string."""
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value)
    if text.startswith(("0x", "0X")):
        text = text[2:]
    return bytes.fromhex(text)


@dataclass
class PendingTransaction:
    """An unconfirmed transaction observed on the pending stream."""
    hash: str
    sender: str
    to: Optional[str]
    input: bytes
    value: int = 0
    gas: int = 0
    nonce: int = 0

    # Legacy and EIP-1559 fee fields
    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None

    first_seen_at: float = field(default_factory=time.time)

    @classmethod
    def from_web3(cls, tx: Dict[str, Any], first_seen_at: Optional[float] = None) -> "PendingTransaction":
        """Build from a node transaction object (web3 AttributeDict or plain dict)."""
        to_address = tx.get("to")
        return cls(
            hash=to_hex_str(tx.get("hash")),
            sender=to_hex_str(tx.get("from")),
            to=to_hex_str(to_address) if to_address else None,
            input=to_bytes(tx.get("input", tx.get("data"))),
            value=int(tx.get("value", 0) or 0),
            gas=int(tx.get("gas", 0) or 0),
            nonce=int(tx.get("nonce", 0) or 0),
            gas_price=tx.get("gasPrice"),
            max_fee_per_gas=tx.get("maxFeePerGas"),
            max_priority_fee_per_gas=tx.get("maxPriorityFeePerGas"),
            first_seen_at=first_seen_at if first_seen_at is not None else time.time(),
        )

    @property
    def is_dynamic_fee(self) -> bool:
        return self.max_fee_per_gas is not None and self.max_priority_fee_per_gas is not None

    def effective_priority_fee(self, base_fee: int) -> int:
        """Tip per gas this transaction pays to the block builder at the given base fee."""
        if self.is_dynamic_fee:
            tip = min(self.max_priority_fee_per_gas, self.max_fee_per_gas - base_fee)
        else:
            tip = (self.gas_price or 0) - base_fee
        return max(0, tip)


@dataclass(frozen=True)
class DecodedSwap:
    """Canonical swap intent extracted from router call data."""
    token_in: str
    token_out: str
    amount_in: int
    min_amount_out: int
    path: Tuple[str, ...]
    deadline: int
    venue: str = "uniswap_v2"
    function_name: str = ""
    exact_output: bool = False

    def __post_init__(self):
        if len(self.path) < 2:
            raise ValueError("Swap path must contain at least two tokens")

    @property
    def is_single_hop(self) -> bool:
        return len(self.path) == 2


@dataclass(frozen=True)
class PoolKey:
    """Identity of a pool: venue plus unordered token pair."""
    venue: str
    token_a: str
    token_b: str

    @classmethod
    def for_pair(cls, venue: str, token_x: str, token_y: str) -> "PoolKey":
        first, second = sorted((token_x.lower(), token_y.lower()))
        return cls(venue=venue, token_a=first, token_b=second)

    def __str__(self) -> str:
        return f"{self.venue}:{self.token_a[:10]}/{self.token_b[:10]}"


@dataclass(frozen=True)
class PoolState:
    """Immutable reserve snapshot of a constant-product pool."""
    key: PoolKey
    pair_address: str
    token0: str
    reserve0: int
    reserve1: int
    block_number: int
    fee_numerator: int = 997
    fee_denominator: int = 1000
    refreshed_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if self.reserve0 < 0 or self.reserve1 < 0:
            raise ValueError(f"Negative reserves for {self.key}")

    def oriented(self, token_in: str) -> Tuple[int, int]:
        """Return (reserve_in, reserve_out) for a swap selling ``token_in``."""
        if token_in.lower() == self.token0.lower():
            return self.reserve0, self.reserve1
        return self.reserve1, self.reserve0


@dataclass(frozen=True)
class ReserveSnapshot:
    """Cache read result: a pool state plus how stale it is."""
    state: PoolState
    age_seconds: float
    is_stale: bool


class VettingStage(str, Enum):
    """Token safety vetting stages, in execution order."""
    LISTS = "lists"
    BYTECODE = "bytecode"
    SIMULATION = "simulation"


@dataclass(frozen=True)
class TokenSafetyVerdict:
    """Cached outcome of vetting one token."""
    token: str
    safe: bool
    reason: str = ""
    stage: Optional[VettingStage] = None
    checked_at: float = field(default_factory=time.time)
    ttl_seconds: float = 3600.0

    def is_expired(self, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return current - self.checked_at >= self.ttl_seconds


class BundleRole(str, Enum):
    """Position of a transaction inside a sandwich bundle."""
    FRONTRUN = "frontrun"
    VICTIM = "victim"
    BACKRUN = "backrun"


class SubmissionState(str, Enum):
    """Lifecycle of a bundle inside the submission gateway."""
    PENDING = "pending"
    SUBMITTED = "submitted"
    INCLUDED = "included"
    NOT_INCLUDED = "not_included"
    REJECTED = "rejected"
    ABANDONED = "abandoned"


class SubmissionOutcome(str, Enum):
    """Per-relay result of a bundle submission."""
    ACCEPTED = "accepted"           # Relay took the bundle, outcome not known yet
    INCLUDED = "included"
    NOT_INCLUDED = "not_included"
    REJECTED = "rejected"


@dataclass(frozen=True)
class BundleTransaction:
    """A signed (or referenced) transaction inside a bundle."""
    role: BundleRole
    tx_hash: str
    raw: bytes
    nonce: Optional[int] = None
    priority_fee: Optional[int] = None


@dataclass
class Bundle:
    """Ordered transaction set targeting one block."""
    transactions: List[BundleTransaction]
    target_block: int
    opportunity_id: str = ""
    state: SubmissionState = SubmissionState.PENDING
    created_at: float = field(default_factory=time.time)

    @property
    def bundle_hash(self) -> str:
        """Deterministic bundle identity: keccak of the concatenated tx hashes."""
        joined = b"".join(to_bytes(tx.tx_hash) for tx in self.transactions)
        return "0x" + keccak(joined).hex()

    @property
    def raw_transactions(self) -> List[str]:
        return ["0x" + tx.raw.hex() for tx in self.transactions]

    def transaction(self, role: BundleRole) -> Optional[BundleTransaction]:
        for tx in self.transactions:
            if tx.role == role:
                return tx
        return None


@dataclass
class SubmissionResult:
    """Outcome of sending one bundle to one relay."""
    bundle_hash: str
    relay: str
    outcome: SubmissionOutcome
    target_block: int
    error: Optional[str] = None
    relay_bundle_hash: Optional[str] = None
    submitted_at: float = field(default_factory=time.time)
