"""
Sandwich Engine.

Wires ingest, decoding, reserve cache, sizing, token vetting, scheduling,
bundle building and submission into one asyncio service:

    mempool monitor -> bounded queue -> worker pool -> evaluation stages
        -> scheduler -> dispatcher -> bundle builder -> submission gateway

Each evaluation runs under a deadline; a late evaluation is abandoned since
the reserves it priced against are probably gone.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Set

from ..config.settings import EngineConfig
from ..errors import (
    EngineError,
    GasCeilingExceededError,
    NetworkError,
    UnprofitableError,
    UnsupportedRouteError,
)
from ..execution.bundle_builder import BundleBuilder, plan_fees
from ..models import Bundle, DecodedSwap, PendingTransaction, PoolKey, ReserveSnapshot
from ..protocols.contracts import CONSTANT_PRODUCT_VENUES, KNOWN_FACTORIES, KNOWN_ROUTERS
from ..protocols.token_safety import TokenSafetyVetter
from ..cache.pool_state_cache import LiquidityStateCache
from ..mev_protection.circuit_breaker import CircuitBreaker
from ..mev_protection.flashbots_client import RelayClient
from ..mev_protection.submission_gateway import SubmissionGateway
from .mempool_monitor import MempoolMonitor, create_mempool_monitor
from .opportunity_models import ALLOWED_TRANSITIONS, Opportunity, OpportunityStatus, VictimReference
from .opportunity_scheduler import OpportunityScheduler
from .pipeline import Continue, Reject, RejectReason, StageResult, from_optional, run_stages
from .profit_calculator import SandwichSizer, SizingResult, VictimWouldRevertError, create_sizer_from_config
from .swap_decoder import SwapDecoder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    """Evaluation state threaded through the stages."""
    tx: PendingTransaction
    swap: Optional[DecodedSwap] = None
    pool_key: Optional[PoolKey] = None
    snapshot: Optional[ReserveSnapshot] = None
    opportunity: Optional[Opportunity] = None


class SandwichEngine:
    """Real-time sandwich opportunity detection and execution."""

    def __init__(
        self,
        config: EngineConfig,
        node: Any,
        cache: LiquidityStateCache,
        vetter: TokenSafetyVetter,
        sizer: SandwichSizer,
        scheduler: OpportunityScheduler,
        decoder: Optional[SwapDecoder] = None,
        builder: Optional[BundleBuilder] = None,
        gateway: Optional[SubmissionGateway] = None,
        monitor: Optional[MempoolMonitor] = None,
        block_poll_interval: float = 0.5,
        stats_interval: float = 60.0,
    ):
        """
        Initialize the engine.

        Args:
            config: Frozen engine configuration
            node: NodeClient
            cache: Pool reserve cache
            vetter: Token safety vetter
            sizer: Optimal sizer
            scheduler: Opportunity scheduler
            decoder: Swap decoder (defaults to the known routers)
            builder: Bundle builder; detection only when None
            gateway: Submission gateway; detection only when None
            monitor: Mempool monitor feeding the worker pool
            block_poll_interval: Seconds between latest-block polls
            stats_interval: Seconds between statistics log lines
        """
        self.config = config
        self.node = node
        self.cache = cache
        self.vetter = vetter
        self.sizer = sizer
        self.scheduler = scheduler
        self.decoder = decoder or SwapDecoder()
        self.builder = builder
        self.gateway = gateway
        self.monitor = monitor
        self.block_poll_interval = block_poll_interval
        self.stats_interval = stats_interval

        self.latest_block = 0
        self.base_fee = 0
        self.is_running = False

        self._swaps: Dict[str, DecodedSwap] = {}
        self._nonces: Dict[str, List[int]] = {}
        self._dispatch_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._executions: Set[asyncio.Task] = set()

        self.stats = {
            "transactions_evaluated": 0,
            "opportunities_detected": 0,
            "evaluation_timeouts": 0,
            "stale_reevaluations": 0,
            "worker_errors": 0,
            "bundles_dispatched": 0,
            "bundles_included": 0,
            "dry_run_bundles": 0,
            "total_profit_detected": 0,
            "rejections": {reason.value: 0 for reason in RejectReason},
            "uptime_start": time.time(),
        }

    # Evaluation stages

    def decode_stage(self, candidate: Candidate) -> StageResult:
        swap = self.decoder.decode_transaction(candidate.tx)
        result = from_optional(swap, RejectReason.NOT_A_SWAP)
        if isinstance(result, Reject):
            return result
        return Continue(replace(candidate, swap=swap))

    def route_stage(self, candidate: Candidate) -> StageResult:
        swap = candidate.swap
        if swap.deadline and swap.deadline < time.time():
            return Reject(RejectReason.EXPIRED_DEADLINE)
        if not swap.is_single_hop or swap.venue not in CONSTANT_PRODUCT_VENUES:
            return Reject(RejectReason.UNSUPPORTED_ROUTE, f"{swap.venue} path of {len(swap.path)}")
        if swap.token_in != self.config.weth_address:
            return Reject(RejectReason.UNSUPPORTED_BASE_TOKEN, swap.token_in)
        if swap.token_out in self.config.blacklisted_tokens:
            return Reject(RejectReason.UNSAFE_TOKEN, "blacklisted")
        return Continue(replace(candidate, pool_key=PoolKey.for_pair(swap.venue, swap.token_in, swap.token_out)))

    async def pool_stage(self, candidate: Candidate) -> StageResult:
        try:
            snapshot = await self.cache.get_or_refresh(candidate.pool_key, timeout=self.config.rpc_timeout)
        except NetworkError as e:
            return Reject(RejectReason.NETWORK, str(e))
        if snapshot is None:
            return Reject(RejectReason.POOL_NOT_FOUND, str(candidate.pool_key))
        return Continue(replace(candidate, snapshot=snapshot))

    def size_stage(self, candidate: Candidate) -> StageResult:
        tx, swap, state = candidate.tx, candidate.swap, candidate.snapshot.state
        victim_tip = tx.effective_priority_fee(self.base_fee)

        try:
            gas_cost = self.estimate_gas_cost(victim_tip)
            result = self.sizer.size_swap(state, swap, gas_cost=gas_cost, min_profit=self.config.min_profit_wei)
        except GasCeilingExceededError as e:
            return Reject(RejectReason.UNPROFITABLE, str(e))
        except VictimWouldRevertError:
            return Reject(RejectReason.VICTIM_WOULD_REVERT)
        except UnsupportedRouteError as e:
            return Reject(RejectReason.UNSUPPORTED_ROUTE, str(e))
        except UnprofitableError:
            return Reject(RejectReason.UNPROFITABLE)

        opportunity = Opportunity(
            victim=VictimReference(
                tx_hash=tx.hash,
                sender=tx.sender,
                amount_in=swap.amount_in,
                min_amount_out=swap.min_amount_out,
                priority_fee=victim_tip,
            ),
            pool_key=candidate.pool_key,
            pair_address=state.pair_address,
            token_in=swap.token_in,
            token_out=swap.token_out,
            frontrun_amount=result.amount,
            expected_frontrun_output=result.frontrun_output,
            expected_backrun_output=result.backrun_output,
            gross_profit=result.gross_profit,
            gas_cost=result.gas_cost,
            net_profit=result.net_profit,
            min_profit=result.gas_cost + self.config.min_profit_wei,
            snapshot_block=state.block_number,
            expiry_block=state.block_number + self.config.opportunity_ttl_blocks,
            deadline_at=float(swap.deadline) if swap.deadline else None,
        )
        return Continue(replace(candidate, opportunity=opportunity))

    async def vet_stage(self, candidate: Candidate) -> StageResult:
        opportunity = candidate.opportunity
        try:
            verdict = await self.vetter.vet(opportunity.token_out, pool=opportunity.pair_address)
        except NetworkError as e:
            return Reject(RejectReason.NETWORK, str(e))
        if not verdict.safe:
            opportunity.transition_to(OpportunityStatus.REJECTED)
            return Reject(RejectReason.UNSAFE_TOKEN, verdict.reason)
        opportunity.transition_to(OpportunityStatus.VETTED)
        return Continue(candidate)

    def estimate_gas_cost(self, victim_tip: int) -> int:
        """Gas cost in wei of both legs at the current base fee."""
        if self.builder is not None:
            return self.builder.estimate_gas_cost(victim_tip, self.base_fee)
        return plan_fees(
            victim_tip,
            self.base_fee,
            frontrun_gas_limit=self.config.frontrun_gas_limit,
            backrun_gas_limit=self.config.backrun_gas_limit,
            priority_fee_bump_bps=self.config.priority_fee_bump_bps,
            backrun_priority_fee_wei=self.config.backrun_priority_fee_wei,
            max_gas_price_wei=self.config.max_gas_price_wei,
        ).max_gas_cost

    async def evaluate(self, tx: PendingTransaction) -> StageResult:
        """
        Evaluate one pending transaction under the evaluation deadline.

        Returns:
            Continue(opportunity) when an opportunity was queued, Reject otherwise
        """
        self.stats["transactions_evaluated"] += 1
        try:
            result = await asyncio.wait_for(self._evaluate(tx), timeout=self.config.evaluation_timeout)
        except asyncio.TimeoutError:
            self.stats["evaluation_timeouts"] += 1
            result = Reject(RejectReason.TIMEOUT)

        if isinstance(result, Reject):
            self.stats["rejections"][result.reason.value] += 1
            logger.debug(f"{tx.hash[:12]} rejected: {result.reason.value} {result.detail}")
        return result

    async def _evaluate(self, tx: PendingTransaction) -> StageResult:
        for attempt in range(2):
            result = await run_stages(
                Candidate(tx=tx),
                self.decode_stage,
                self.route_stage,
                self.pool_stage,
                self.size_stage,
                self.vet_stage,
            )
            if isinstance(result, Reject):
                return result

            candidate = result.value
            if not self._snapshot_superseded(candidate):
                return self._queue(candidate)

            # Reserves moved while we were evaluating: discard, re-evaluate once
            candidate.opportunity.transition_to(OpportunityStatus.REJECTED)
            self.stats["stale_reevaluations"] += 1

        return Reject(RejectReason.STALE_STATE)

    def _snapshot_superseded(self, candidate: Candidate) -> bool:
        current = self.cache.get(candidate.pool_key)
        if current is None:
            return False
        return current.state.block_number > candidate.snapshot.state.block_number

    def _queue(self, candidate: Candidate) -> StageResult:
        opportunity = candidate.opportunity
        previous = self.scheduler.queued_for(opportunity.pool_key)
        if not self.scheduler.offer(opportunity):
            return Reject(RejectReason.SCHEDULER_DROPPED, str(opportunity.pool_key))
        if previous is not None and previous.is_terminal:
            self._forget(previous.opportunity_id)

        self._swaps[opportunity.opportunity_id] = candidate.swap
        self.stats["opportunities_detected"] += 1
        self.stats["total_profit_detected"] += opportunity.net_profit
        logger.info(
            f"Sandwich opportunity {opportunity.opportunity_id[:8]} on {opportunity.pool_key}: "
            f"victim {opportunity.victim.tx_hash[:12]} front {opportunity.frontrun_amount} "
            f"net {opportunity.net_profit} wei (block {opportunity.snapshot_block})"
        )
        self._dispatch_event.set()
        return Continue(opportunity)

    # Block handling

    async def on_new_block(self, block_number: int, base_fee: Optional[int] = None) -> None:
        """Refresh reserves, expire stale opportunities and wake the dispatcher."""
        if block_number <= self.latest_block:
            return
        self.latest_block = block_number
        if base_fee is not None:
            self.base_fee = base_fee

        await self.cache.on_new_block(block_number, watched=self.scheduler.active_pool_keys())

        mined = await self._mined_victims()
        expired = self.scheduler.expire(block_number, is_pending=lambda tx_hash: tx_hash not in mined)
        for opportunity in expired:
            self._forget(opportunity.opportunity_id)

        self.vetter.clear_expired()
        self._dispatch_event.set()

    async def _mined_victims(self) -> Set[str]:
        hashes = [opportunity.victim.tx_hash for opportunity in self.scheduler.queued()]
        if not hashes:
            return set()
        receipts = await asyncio.gather(
            *(self.node.get_transaction_receipt(tx_hash) for tx_hash in hashes), return_exceptions=True
        )
        return {tx_hash for tx_hash, receipt in zip(hashes, receipts)
                if receipt is not None and not isinstance(receipt, Exception)}

    async def poll_block(self) -> None:
        block = await self.node.get_block("latest", timeout=max(self.config.rpc_timeout, 1.0))
        await self.on_new_block(int(block["number"]), int(block.get("baseFeePerGas", 0) or 0))

    async def reconcile(self, latest_block: int) -> None:
        """Catch up after an ingest reconnect."""
        logger.info(f"Reconciling at block {latest_block}")
        await self.poll_block()

    async def _block_loop(self) -> None:
        while self.is_running:
            try:
                await self.poll_block()
            except NetworkError as e:
                logger.warning(f"Block poll failed: {e}")
            except Exception as e:
                logger.error(f"Block handling failed: {e}", exc_info=True)
            await asyncio.sleep(self.block_poll_interval)

    # Dispatch

    async def _dispatch_loop(self) -> None:
        while self.is_running:
            await self._dispatch_event.wait()
            self._dispatch_event.clear()
            self.dispatch_ready()

    def dispatch_ready(self) -> int:
        """Start execution for every opportunity the scheduler releases."""
        if self.gateway is not None and self.gateway.circuit_breaker.is_open:
            logger.debug("Circuit open, skipping dispatch")
            return 0

        started = 0
        while True:
            opportunity = self.scheduler.next_ready()
            if opportunity is None:
                return started
            task = asyncio.create_task(self.execute(opportunity))
            self._executions.add(task)
            task.add_done_callback(self._executions.discard)
            started += 1
            self.stats["bundles_dispatched"] += 1

    async def execute(self, opportunity: Opportunity) -> OpportunityStatus:
        """Build and submit a bundle for a BUILDING opportunity, then free its pool."""
        try:
            await self._execute(opportunity)
        except EngineError as e:
            logger.info(f"Opportunity {opportunity.opportunity_id[:8]} dropped: {e}")
            opportunity.metadata["error"] = str(e)
            self._settle(opportunity, OpportunityStatus.REJECTED)
        finally:
            self._settle(opportunity, OpportunityStatus.EXPIRED)
            self.scheduler.release(opportunity.pool_key)
            if opportunity.status == OpportunityStatus.INCLUDED:
                self.stats["bundles_included"] += 1
            elif opportunity.opportunity_id in self._nonces:
                await self._resync_nonces()
            self._forget(opportunity.opportunity_id)
            self._dispatch_event.set()
        return opportunity.status

    @staticmethod
    def _settle(opportunity: Opportunity, preferred: OpportunityStatus) -> None:
        """Move a non-terminal opportunity to ``preferred`` or the other allowed terminal status."""
        if opportunity.is_terminal:
            return
        allowed = ALLOWED_TRANSITIONS.get(opportunity.status, frozenset())
        if preferred not in allowed:
            preferred = next(s for s in (OpportunityStatus.EXPIRED, OpportunityStatus.REJECTED) if s in allowed)
        opportunity.transition_to(preferred)

    async def _execute(self, opportunity: Opportunity) -> None:
        target_block = self.latest_block + 1
        if target_block > opportunity.expiry_block:
            opportunity.transition_to(OpportunityStatus.EXPIRED)
            return

        if self.builder is None:
            logger.info(f"Detection only: opportunity {opportunity.opportunity_id[:8]} not executed")
            opportunity.metadata["reason"] = "detection_only"
            opportunity.transition_to(OpportunityStatus.REJECTED)
            return

        bundle = await self.builder.build(opportunity, target_block, base_fee=self.base_fee)
        self._remember_nonces(opportunity, bundle)

        if self.config.dry_run or self.gateway is None:
            self.stats["dry_run_bundles"] += 1
            logger.info(f"Dry run: bundle {bundle.bundle_hash} for block {target_block} not submitted "
                        f"({len(bundle.transactions)} txs, net {opportunity.net_profit} wei)")
            opportunity.metadata["reason"] = "dry_run"
            opportunity.metadata["bundle_hash"] = bundle.bundle_hash
            opportunity.transition_to(OpportunityStatus.REJECTED)
            return

        await self.gateway.run(opportunity, bundle, rebuild=self.rebuild)

    async def rebuild(self, opportunity: Opportunity, target_block: int) -> Optional[Bundle]:
        """Re-size against fresh reserves and rebuild for ``target_block``; None if no longer viable."""
        swap = self._swaps.get(opportunity.opportunity_id)
        if swap is None:
            return None

        if await self.node.get_transaction_receipt(opportunity.victim.tx_hash) is not None:
            logger.debug(f"Victim {opportunity.victim.tx_hash[:12]} already mined, not retrying")
            return None

        self.cache.invalidate(opportunity.pool_key)
        snapshot = await self.cache.get_or_refresh(opportunity.pool_key, timeout=max(self.config.rpc_timeout, 1.0))
        if snapshot is None:
            return None

        gas_cost = self.estimate_gas_cost(opportunity.victim.priority_fee)
        result = self.sizer.size_swap(snapshot.state, swap, gas_cost=gas_cost,
                                      min_profit=self.config.min_profit_wei)
        self._apply_sizing(opportunity, result, snapshot.state.block_number, target_block)

        return await self.builder.build(opportunity, target_block, base_fee=self.base_fee,
                                        nonces=self._nonces.get(opportunity.opportunity_id))

    @staticmethod
    def _apply_sizing(opportunity: Opportunity, result: SizingResult, snapshot_block: int,
                      target_block: int) -> None:
        opportunity.frontrun_amount = result.amount
        opportunity.expected_frontrun_output = result.frontrun_output
        opportunity.expected_backrun_output = result.backrun_output
        opportunity.gross_profit = result.gross_profit
        opportunity.gas_cost = result.gas_cost
        opportunity.net_profit = result.net_profit
        opportunity.snapshot_block = snapshot_block
        opportunity.expiry_block = max(opportunity.expiry_block, target_block)

    def _remember_nonces(self, opportunity: Opportunity, bundle: Bundle) -> None:
        nonces = [tx.nonce for tx in bundle.transactions if tx.nonce is not None]
        if nonces:
            self._nonces[opportunity.opportunity_id] = nonces

    async def _resync_nonces(self) -> None:
        if self.builder is None:
            return
        try:
            await self.builder.nonce_manager.resync()
        except NetworkError as e:
            logger.warning(f"Nonce resync failed: {e}")

    def _forget(self, opportunity_id: str) -> None:
        self._swaps.pop(opportunity_id, None)
        self._nonces.pop(opportunity_id, None)

    # Workers

    async def _worker(self, worker_id: int) -> None:
        queue = self.monitor.queue
        while self.is_running:
            tx = await queue.get()
            try:
                await self.evaluate(tx)
            except Exception as e:
                self.stats["worker_errors"] += 1
                logger.error(f"Worker {worker_id} failed on {tx.hash}: {e}", exc_info=True)
            finally:
                queue.task_done()

    async def _stats_loop(self) -> None:
        while self.is_running:
            await asyncio.sleep(self.stats_interval)
            stats = self.get_stats()
            logger.info(
                f"Block {self.latest_block}: evaluated {stats['transactions_evaluated']}, "
                f"detected {stats['opportunities_detected']}, dispatched {stats['bundles_dispatched']}, "
                f"included {stats['bundles_included']}, queue {stats['monitor'].get('queue_depth', 0)}"
            )

    # Lifecycle

    async def start(self) -> None:
        """Start the monitor, the worker pool and the background loops."""
        if self.is_running:
            logger.warning("Sandwich engine already running")
            return

        logger.info(f"Starting sandwich engine with {self.config.worker_count} workers "
                    f"(dry_run={self.config.dry_run})")
        self.is_running = True

        if self.gateway is not None:
            for relay in self.gateway.relays:
                await relay.initialize()

        try:
            await self.poll_block()
        except NetworkError as e:
            logger.warning(f"Initial block poll failed: {e}")

        self._tasks = [
            asyncio.create_task(self._block_loop()),
            asyncio.create_task(self._dispatch_loop()),
            asyncio.create_task(self._stats_loop()),
        ]
        if self.monitor is not None:
            self._tasks.extend(asyncio.create_task(self._worker(i)) for i in range(self.config.worker_count))
            await self.monitor.start()

        logger.info("Sandwich engine started")

    async def stop(self) -> None:
        """Stop all loops and in-flight executions."""
        logger.info("Stopping sandwich engine")
        self.is_running = False

        if self.monitor is not None:
            await self.monitor.stop()

        tasks = self._tasks + list(self._executions)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        if self.gateway is not None:
            for relay in self.gateway.relays:
                await relay.close()

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "rejections": dict(self.stats["rejections"]),
            "latest_block": self.latest_block,
            "base_fee": self.base_fee,
            "uptime_seconds": time.time() - self.stats["uptime_start"],
            "decoder": self.decoder.get_stats(),
            "cache": self.cache.get_stats(),
            "vetter": self.vetter.get_stats(),
            "scheduler": self.scheduler.get_stats(),
            "monitor": self.monitor.get_stats() if self.monitor else {},
            "builder": self.builder.get_stats() if self.builder else {},
            "gateway": self.gateway.get_stats() if self.gateway else {},
        }


# Convenience functions

def create_engine(config: EngineConfig, node: Any, private_key: Optional[str] = None,
                  relay_signing_key: Optional[str] = None, redis_client: Optional[Any] = None) -> SandwichEngine:
    """
    Assemble a complete engine from configuration.

    Without a private key and executor address the engine detects and logs
    opportunities but never builds bundles.
    """
    factories = {**KNOWN_FACTORIES, "uniswap_v2": config.factory_address}
    cache = LiquidityStateCache(
        node,
        ttl_seconds=config.pool_state_ttl_seconds,
        refresh_timeout=config.rpc_timeout,
        factories=factories,
    )
    vetter = TokenSafetyVetter(
        node,
        base_token=config.weth_address,
        executor_address=config.executor_address,
        whitelist=config.whitelisted_tokens,
        blacklist=config.blacklisted_tokens,
        safe_ttl_seconds=config.safe_verdict_ttl_seconds,
        unsafe_ttl_seconds=config.unsafe_verdict_ttl_seconds,
        max_transfer_loss_bps=config.max_transfer_loss_bps,
        redis_client=redis_client,
    )
    routers = dict(KNOWN_ROUTERS)
    for address in config.router_addresses:
        routers.setdefault(address, "uniswap_v2")

    builder = gateway = None
    if private_key and config.executor_address:
        builder = BundleBuilder(
            node,
            private_key=private_key,
            executor_address=config.executor_address,
            chain_id=config.chain_id,
            frontrun_gas_limit=config.frontrun_gas_limit,
            backrun_gas_limit=config.backrun_gas_limit,
            priority_fee_bump_bps=config.priority_fee_bump_bps,
            backrun_priority_fee_wei=config.backrun_priority_fee_wei,
            max_gas_price_wei=config.max_gas_price_wei,
        )
        relays = [RelayClient(relay_signing_key or private_key, relay_url=url, timeout=config.relay_timeout)
                  for url in config.relay_urls]
        gateway = SubmissionGateway(
            relays,
            node,
            circuit_breaker=CircuitBreaker(config.circuit_failure_threshold, config.circuit_cooldown_seconds),
            max_relay_retries=config.max_relay_retries,
            max_block_retries=config.max_block_retries,
            reject_alert_threshold=config.relay_reject_alert_threshold,
            max_network_retries=config.max_network_retries,
            network_backoff=config.network_backoff,
        )
    else:
        logger.warning("No private key or executor configured: running in detection-only mode")

    engine = SandwichEngine(
        config,
        node,
        cache=cache,
        vetter=vetter,
        sizer=create_sizer_from_config(config),
        scheduler=OpportunityScheduler(max_inflight=config.max_inflight_bundles),
        decoder=SwapDecoder(routers),
        builder=builder,
        gateway=gateway,
    )
    engine.monitor = create_mempool_monitor(node, config, reconcile=engine.reconcile)
    return engine
