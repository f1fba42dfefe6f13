"""
Mempool Monitor.

Subscribes to the node's pending transaction stream, resolves hashes into
transactions, keeps only calls to tracked routers and feeds them into a
bounded queue drained by the engine's worker pool.
"""
import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, FrozenSet, Optional, Set

import aiohttp

from ..errors import NetworkError
from ..models import PendingTransaction

logger = logging.getLogger(__name__)

Reconcile = Callable[[int], Awaitable[None]]

CONNECTION_ERRORS = (NetworkError, ConnectionError, OSError, aiohttp.ClientError)


@dataclass
class MempoolConfig:
    """Configuration for mempool monitoring."""

    tracked_routers: FrozenSet[str] = field(default_factory=frozenset)

    # Queue and backpressure
    queue_size: int = 2_000
    backpressure_policy: str = "drop_oldest"   # or "reject_new"

    # Resolution
    resolve_timeout: float = 0.025
    resolve_concurrency: int = 64
    seen_capacity: int = 50_000

    # Reconnection backoff
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 30.0

    def __post_init__(self):
        if self.backpressure_policy not in ("drop_oldest", "reject_new"):
            raise ValueError(f"Unknown backpressure policy: {self.backpressure_policy}")
        self.tracked_routers = frozenset(address.lower() for address in self.tracked_routers)


class MempoolMonitor:
    """
    Pending transaction ingest with a bounded hand-off queue.

    ``pending_hashes`` is a lazy, infinite, single-use stream; connection
    loss is handled inside it with exponential backoff, after which the
    reconcile hook is called with the latest block number so downstream
    state can catch up on whatever was missed while disconnected.
    """

    def __init__(self, node: Any, config: MempoolConfig, reconcile: Optional[Reconcile] = None):
        """
        Initialize the mempool monitor.

        Args:
            node: NodeClient providing subscribe_pending/get_transaction/get_block_number
            config: Monitor configuration
            reconcile: Called with the latest block number after every resubscription
        """
        self.node = node
        self.config = config
        self.reconcile = reconcile

        self.queue: "asyncio.Queue[PendingTransaction]" = asyncio.Queue(maxsize=config.queue_size)
        self.is_running = False

        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._stream_started = False
        self._task: Optional[asyncio.Task] = None
        self._resolvers: Set[asyncio.Task] = set()
        self._resolve_slots = asyncio.Semaphore(config.resolve_concurrency)

        self.stats = {
            "hashes_received": 0,
            "duplicates": 0,
            "transactions_resolved": 0,
            "resolve_failures": 0,
            "not_tracked": 0,
            "forwarded": 0,
            "dropped_oldest": 0,
            "rejected_new": 0,
            "reconnects": 0,
            "uptime_start": time.time(),
        }

    async def pending_hashes(self) -> AsyncIterator[str]:
        """Yield unseen pending transaction hashes forever, resubscribing on loss."""
        if self._stream_started:
            raise RuntimeError("pending_hashes() is single-use; it is already being consumed")
        self._stream_started = True

        attempt = 0
        while True:
            try:
                async for tx_hash in self.node.subscribe_pending():
                    attempt = 0
                    self.stats["hashes_received"] += 1
                    if self._mark_seen(tx_hash):
                        yield tx_hash
                raise NetworkError("Pending subscription closed by the node")
            except CONNECTION_ERRORS as e:
                delay = self.backoff_delay(attempt)
                attempt += 1
                self.stats["reconnects"] += 1
                logger.warning(f"Pending stream lost ({e}); resubscribing in {delay:.2f}s")
                await asyncio.sleep(delay)
                await self._reconcile()

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff: base * 2**attempt, capped."""
        return min(self.config.backoff_base_seconds * (2 ** attempt), self.config.backoff_max_seconds)

    async def _reconcile(self) -> None:
        if self.reconcile is None:
            return
        try:
            latest = await self.node.get_block_number(timeout=max(self.config.resolve_timeout, 1.0))
            await self.reconcile(latest)
        except NetworkError as e:
            logger.warning(f"Reconcile after reconnect failed: {e}")

    def _mark_seen(self, tx_hash: str) -> bool:
        """Record ``tx_hash``; False if it was already seen recently."""
        if tx_hash in self._seen:
            self.stats["duplicates"] += 1
            return False
        self._seen[tx_hash] = None
        if len(self._seen) > self.config.seen_capacity:
            self._seen.popitem(last=False)
        return True

    async def resolve(self, tx_hash: str) -> Optional[PendingTransaction]:
        """Fetch a pending transaction; None if unknown or the node is too slow."""
        try:
            tx = await self.node.get_transaction(tx_hash, timeout=self.config.resolve_timeout)
        except NetworkError as e:
            self.stats["resolve_failures"] += 1
            logger.debug(f"Could not resolve {tx_hash}: {e}")
            return None
        if tx is None:
            self.stats["resolve_failures"] += 1
            return None

        self.stats["transactions_resolved"] += 1
        return PendingTransaction.from_web3(tx)

    def is_tracked(self, tx: PendingTransaction) -> bool:
        return tx.to is not None and tx.to.lower() in self.config.tracked_routers

    def enqueue(self, tx: PendingTransaction) -> bool:
        """
        Hand a transaction to the workers, applying the backpressure policy.

        Returns:
            False if the transaction was dropped under ``reject_new``.
        """
        if self.queue.full():
            if self.config.backpressure_policy == "reject_new":
                self.stats["rejected_new"] += 1
                return False
            self.queue.get_nowait()
            self.queue.task_done()
            self.stats["dropped_oldest"] += 1

        self.queue.put_nowait(tx)
        self.stats["forwarded"] += 1
        return True

    async def ingest(self, tx_hash: str) -> bool:
        """Resolve, filter and enqueue one hash."""
        tx = await self.resolve(tx_hash)
        if tx is None:
            return False
        if not self.is_tracked(tx):
            self.stats["not_tracked"] += 1
            return False
        return self.enqueue(tx)

    async def run(self) -> None:
        """Consume the pending stream, resolving hashes concurrently."""
        async for tx_hash in self.pending_hashes():
            await self._resolve_slots.acquire()
            task = asyncio.create_task(self._ingest_slot(tx_hash))
            self._resolvers.add(task)
            task.add_done_callback(self._resolvers.discard)

    async def _ingest_slot(self, tx_hash: str) -> None:
        try:
            await self.ingest(tx_hash)
        finally:
            self._resolve_slots.release()

    async def start(self) -> None:
        """Start monitoring in a background task."""
        if self.is_running:
            logger.warning("Mempool monitor already running")
            return
        logger.info(f"Starting mempool monitor for {len(self.config.tracked_routers)} routers")
        self.is_running = True
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Stop monitoring and cancel in-flight resolutions."""
        logger.info("Stopping mempool monitor")
        self.is_running = False
        tasks = list(self._resolvers)
        if self._task is not None:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None

    def get_stats(self) -> Dict[str, Any]:
        """Get monitoring statistics."""
        return {
            **self.stats,
            "queue_depth": self.queue.qsize(),
            "uptime_seconds": time.time() - self.stats["uptime_start"],
        }


# Convenience functions

def create_mempool_monitor(node: Any, engine_config, reconcile: Optional[Reconcile] = None) -> MempoolMonitor:
    """Create a mempool monitor from an EngineConfig."""
    config = MempoolConfig(
        tracked_routers=engine_config.router_addresses,
        queue_size=engine_config.ingest_queue_size,
        backpressure_policy=engine_config.backpressure_policy,
        resolve_timeout=engine_config.rpc_timeout,
    )
    return MempoolMonitor(node, config, reconcile=reconcile)
