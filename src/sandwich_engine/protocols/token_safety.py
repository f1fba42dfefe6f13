"""
Token safety vetting.

A token is only traded after it passes three ordered stages, cheapest first:

1. static allow / deny lists
2. a scan of the deployed bytecode for administrative hooks (pause,
   blacklist, fee setters) reachable through the dispatcher
3. a dry-run buy/sell round trip through the executor contract that catches
   transfer taxes and sell blocks

Verdicts are cached per token with separate TTLs for safe and unsafe
outcomes, and optionally written through to Redis.
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from redis.exceptions import RedisError

from ..errors import SimulationRevertError, UnsafeTokenError
from ..mev_detection.pipeline import Continue, Reject, RejectReason, StageResult, run_stages
from ..models import TokenSafetyVerdict, VettingStage
from .contracts import EXECUTOR_SIGNATURES, HAZARD_SELECTORS, PROBE_RETURN_TYPES, PUSH4_OPCODE, selector

logger = logging.getLogger(__name__)

PROBE_ROUND_TRIP_SELECTOR = selector(EXECUTOR_SIGNATURES["probeRoundTrip"])
DEFAULT_PROBE_AMOUNT = 10**15
REDIS_KEY_PREFIX = "sandwich_engine:verdict:"

PUSH1_OPCODE = 0x60
PUSH32_OPCODE = 0x7F


@dataclass(frozen=True)
class VettingContext:
    """Value threaded through the vetting stages."""
    token: str
    pool: Optional[str] = None
    settled: bool = False       # allow-listed, later stages pass through
    stage: VettingStage = VettingStage.LISTS


@dataclass(frozen=True)
class ProbeResult:
    """Amounts reported by the executor's round-trip probe."""
    expected_buy: int
    received_buy: int
    expected_sell: int
    received_sell: int

    @property
    def loss_bps(self) -> int:
        """Worst shortfall of received vs expected across both legs."""
        worst = 0
        for expected, received in ((self.expected_buy, self.received_buy),
                                   (self.expected_sell, self.received_sell)):
            if expected <= 0:
                continue
            if received <= 0:
                return 10_000
            shortfall = max(0, expected - received)
            worst = max(worst, shortfall * 10_000 // expected)
        return worst


def push4_operands(code: bytes) -> List[bytes]:
    """Return the 4-byte immediates of every PUSH4 in ``code``, skipping push data."""
    operands = []
    i = 0
    length = len(code)
    while i < length:
        opcode = code[i]
        if PUSH1_OPCODE <= opcode <= PUSH32_OPCODE:
            size = opcode - PUSH1_OPCODE + 1
            if opcode == PUSH4_OPCODE and i + 5 <= length:
                operands.append(bytes(code[i + 1:i + 5]))
            i += size + 1
        else:
            i += 1
    return operands


def check_lists(context: VettingContext, whitelist: FrozenSet[str], blacklist: FrozenSet[str]) -> StageResult:
    """Stage 1: static allow and deny lists."""
    token = context.token.lower()
    if token in blacklist:
        return Reject(RejectReason.UNSAFE_TOKEN, "blacklisted")
    if token in whitelist:
        return Continue(replace(context, settled=True))
    return Continue(context)


def scan_bytecode(context: VettingContext, code: bytes) -> StageResult:
    """Stage 2: reject contracts exposing administrative hazard functions."""
    context = replace(context, stage=VettingStage.BYTECODE)
    if context.settled:
        return Continue(context)
    if not code:
        return Reject(RejectReason.UNSAFE_TOKEN, "no contract code")

    hazards = sorted({HAZARD_SELECTORS[op] for op in push4_operands(code) if op in HAZARD_SELECTORS})
    if hazards:
        return Reject(RejectReason.UNSAFE_TOKEN, f"hazard functions: {', '.join(hazards)}")
    return Continue(context)


def evaluate_probe(context: VettingContext, probe: ProbeResult, max_loss_bps: int) -> StageResult:
    """Stage 3 decision: transfer loss above ``max_loss_bps`` marks a fee-on-transfer token."""
    context = replace(context, stage=VettingStage.SIMULATION)
    if probe.received_buy == 0 or probe.received_sell == 0:
        return Reject(RejectReason.UNSAFE_TOKEN, "round trip returned nothing")
    loss = probe.loss_bps
    if loss > max_loss_bps:
        return Reject(RejectReason.UNSAFE_TOKEN, f"transfer loss {loss} bps")
    return Continue(context)


class TokenSafetyVetter:
    """Runs the vetting stages and caches verdicts per token."""

    def __init__(
        self,
        node: Any,
        base_token: str,
        executor_address: Optional[str] = None,
        whitelist: Iterable[str] = (),
        blacklist: Iterable[str] = (),
        safe_ttl_seconds: float = 3600.0,
        unsafe_ttl_seconds: float = 86400.0,
        max_transfer_loss_bps: int = 10,
        probe_amount: int = DEFAULT_PROBE_AMOUNT,
        redis_client: Optional[Any] = None,
    ):
        """
        Initialize the vetter.

        Args:
            node: NodeClient used for getCode and eth_call
            base_token: Token the probe buys with (WETH); always allow-listed
            executor_address: Executor contract exposing probeRoundTrip; the
                simulation stage is skipped when None
            whitelist: Tokens considered safe without further checks
            blacklist: Tokens always rejected
            safe_ttl_seconds: Lifetime of a safe verdict
            unsafe_ttl_seconds: Lifetime of an unsafe verdict
            max_transfer_loss_bps: Tolerated round-trip shortfall
            probe_amount: Base token amount used for the round trip
            redis_client: Optional redis.asyncio client for persisted verdicts
        """
        self.node = node
        self.base_token = base_token.lower()
        self.executor_address = executor_address.lower() if executor_address else None
        self.whitelist = frozenset(t.lower() for t in whitelist) | {self.base_token}
        self.blacklist = frozenset(t.lower() for t in blacklist)
        self.safe_ttl_seconds = safe_ttl_seconds
        self.unsafe_ttl_seconds = unsafe_ttl_seconds
        self.max_transfer_loss_bps = max_transfer_loss_bps
        self.probe_amount = probe_amount
        self.redis = redis_client

        self._verdicts: Dict[str, TokenSafetyVerdict] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

        self.stats = {
            "tokens_evaluated": 0,
            "tokens_passed": 0,
            "tokens_failed": 0,
            "cache_hits": 0,
            "redis_hits": 0,
            "redis_errors": 0,
        }

        if self.executor_address is None:
            logger.warning("No executor address configured: round-trip simulation disabled")

    def cached_verdict(self, token: str, now: Optional[float] = None) -> Optional[TokenSafetyVerdict]:
        """Return the unexpired cached verdict for ``token``, if any."""
        verdict = self._verdicts.get(token.lower())
        if verdict is None:
            return None
        if verdict.is_expired(now):
            self._verdicts.pop(token.lower(), None)
            return None
        return verdict

    async def vet(self, token: str, pool: Optional[str] = None) -> TokenSafetyVerdict:
        """
        Return the safety verdict for ``token``, running the stages on a cache miss.

        Args:
            token: Token address
            pool: Pair used for the round-trip probe

        Raises:
            NetworkError: If the node could not be reached (no verdict is cached).
        """
        token = token.lower()
        verdict = self.cached_verdict(token)
        if verdict is not None:
            self.stats["cache_hits"] += 1
            return verdict

        lock = self._locks.setdefault(token, asyncio.Lock())
        async with lock:
            verdict = self.cached_verdict(token)
            if verdict is not None:
                self.stats["cache_hits"] += 1
                return verdict

            verdict = await self._load_persisted(token)
            if verdict is None:
                verdict = await self._run_stages(token, pool)
                if not self.is_verified(verdict):
                    # Never persisted; kept in memory only when no round trip is possible
                    if self.executor_address is None:
                        self._verdicts[token] = verdict
                    return verdict
                await self._persist(verdict)

            self._verdicts[token] = verdict
            return verdict

    @staticmethod
    def is_verified(verdict: TokenSafetyVerdict) -> bool:
        """True for unsafe verdicts and for safe ones that went through the round trip."""
        return not verdict.safe or verdict.stage == VettingStage.SIMULATION

    async def require_safe(self, token: str, pool: Optional[str] = None) -> TokenSafetyVerdict:
        """Like ``vet`` but raises UnsafeTokenError for unsafe tokens."""
        verdict = await self.vet(token, pool)
        if not verdict.safe:
            raise UnsafeTokenError(token, verdict.reason, verdict.stage.value if verdict.stage else None)
        return verdict

    async def _run_stages(self, token: str, pool: Optional[str]) -> TokenSafetyVerdict:
        self.stats["tokens_evaluated"] += 1
        context = VettingContext(token=token, pool=pool)
        reached = VettingStage.LISTS

        def lists_stage(ctx: VettingContext) -> StageResult:
            return check_lists(ctx, self.whitelist, self.blacklist)

        async def bytecode_stage(ctx: VettingContext) -> StageResult:
            nonlocal reached
            reached = VettingStage.BYTECODE
            if ctx.settled:
                return Continue(ctx)
            code = await self.node.get_code(ctx.token)
            return scan_bytecode(ctx, code)

        async def simulation_stage(ctx: VettingContext) -> StageResult:
            nonlocal reached
            reached = VettingStage.SIMULATION
            return await self.simulate_round_trip(ctx)

        result = await run_stages(context, lists_stage, bytecode_stage, simulation_stage)

        if isinstance(result, Reject):
            self.stats["tokens_failed"] += 1
            logger.info(f"Token {token} unsafe at {reached.value}: {result.detail}")
            return TokenSafetyVerdict(
                token=token,
                safe=False,
                reason=result.detail,
                stage=reached,
                ttl_seconds=self.unsafe_ttl_seconds,
            )

        self.stats["tokens_passed"] += 1
        return TokenSafetyVerdict(
            token=token,
            safe=True,
            stage=result.value.stage,
            ttl_seconds=self.safe_ttl_seconds,
        )

    async def simulate_round_trip(self, context: VettingContext) -> StageResult:
        """Stage 3: dry-run buy then sell through the executor's probe."""
        if context.settled:
            return Continue(replace(context, stage=VettingStage.SIMULATION))
        if self.executor_address is None or context.pool is None:
            return Continue(context)

        call_data = PROBE_ROUND_TRIP_SELECTOR + encode(
            ["address", "address", "address", "uint256"],
            [context.pool, self.base_token, context.token, self.probe_amount],
        )
        try:
            returned = await self.node.call({"to": self.executor_address, "data": call_data})
        except SimulationRevertError as e:
            logger.debug(f"Round-trip probe for {context.token} reverted: {e.revert_reason or e}")
            return Reject(RejectReason.UNSAFE_TOKEN, "round trip reverted")

        try:
            probe = ProbeResult(*decode(PROBE_RETURN_TYPES, returned))
        except (DecodingError, ValueError) as e:
            logger.debug(f"Unreadable probe result for {context.token}: {e}")
            return Reject(RejectReason.UNSAFE_TOKEN, "unreadable probe result")

        return evaluate_probe(context, probe, self.max_transfer_loss_bps)

    async def _load_persisted(self, token: str) -> Optional[TokenSafetyVerdict]:
        if self.redis is None:
            return None
        try:
            raw = await self.redis.get(REDIS_KEY_PREFIX + token)
        except (RedisError, OSError) as e:
            self.stats["redis_errors"] += 1
            logger.warning(f"Redis read failed for {token}: {e}")
            return None
        if not raw:
            return None

        try:
            data = json.loads(raw)
            verdict = TokenSafetyVerdict(
                token=token,
                safe=bool(data["safe"]),
                reason=data.get("reason", ""),
                stage=VettingStage(data["stage"]) if data.get("stage") else None,
                checked_at=float(data["checked_at"]),
                ttl_seconds=float(data["ttl_seconds"]),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            self.stats["redis_errors"] += 1
            logger.warning(f"Discarding corrupt persisted verdict for {token}: {e}")
            return None

        if verdict.is_expired():
            return None
        if self.executor_address is not None and not self.is_verified(verdict):
            logger.debug(f"Ignoring persisted verdict for {token} without a round trip")
            return None
        self.stats["redis_hits"] += 1
        return verdict

    async def _persist(self, verdict: TokenSafetyVerdict) -> None:
        if self.redis is None:
            return
        payload = json.dumps({
            "safe": verdict.safe,
            "reason": verdict.reason,
            "stage": verdict.stage.value if verdict.stage else None,
            "checked_at": verdict.checked_at,
            "ttl_seconds": verdict.ttl_seconds,
        })
        try:
            await self.redis.set(REDIS_KEY_PREFIX + verdict.token, payload, ex=max(1, int(verdict.ttl_seconds)))
        except (RedisError, OSError) as e:
            self.stats["redis_errors"] += 1
            logger.warning(f"Redis write failed for {verdict.token}: {e}")

    def invalidate(self, token: str) -> None:
        self._verdicts.pop(token.lower(), None)

    def clear_expired(self, now: Optional[float] = None) -> int:
        """Drop expired verdicts; returns how many were removed."""
        current = time.time() if now is None else now
        expired = [token for token, verdict in self._verdicts.items() if verdict.is_expired(current)]
        for token in expired:
            del self._verdicts[token]
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "cached_verdicts": len(self._verdicts)}
