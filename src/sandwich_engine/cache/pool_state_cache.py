"""
Liquidity State Cache.

Holds the latest reserve snapshot per pool. Snapshots are immutable
``PoolState`` objects; a refresh builds a new one and swaps the dict entry,
so concurrent readers only ever see a complete snapshot. Reads are a single
dict lookup.
"""
import asyncio
import logging
import time
from typing import Any, Dict, Iterable, Optional

from ..errors import NetworkError
from ..models import PoolKey, PoolState, ReserveSnapshot
from ..protocols.contracts import KNOWN_FACTORIES

logger = logging.getLogger(__name__)


class LiquidityStateCache:
    """TTL-backed reserve cache refreshed from the node."""

    def __init__(
        self,
        node: Any,
        ttl_seconds: float = 12.0,
        refresh_timeout: float = 0.025,
        factories: Optional[Dict[str, str]] = None,
        missing_pair_ttl_seconds: float = 60.0,
    ):
        """
        Initialize the cache.

        Args:
            node: NodeClient (or compatible) used for pair lookups and reserves
            ttl_seconds: Age after which a snapshot counts as a miss
            refresh_timeout: Deadline for a synchronous refresh on the read path
            factories: Venue -> V2 factory address
            missing_pair_ttl_seconds: How long a factory answer of "no pair" is trusted
        """
        self.node = node
        self.ttl_seconds = ttl_seconds
        self.refresh_timeout = refresh_timeout
        self.factories = {venue: address.lower() for venue, address in (factories or KNOWN_FACTORIES).items()}
        self.missing_pair_ttl_seconds = missing_pair_ttl_seconds

        self._states: Dict[PoolKey, PoolState] = {}
        self._pairs: Dict[PoolKey, str] = {}
        self._missing_pairs: Dict[PoolKey, float] = {}
        self._token0: Dict[str, str] = {}
        self._locks: Dict[PoolKey, asyncio.Lock] = {}

        self.latest_block = 0

        self.stats = {
            "hits": 0,
            "stale_hits": 0,
            "misses": 0,
            "expired": 0,
            "evicted": 0,
            "refreshes": 0,
            "refresh_failures": 0,
        }

    def get(self, key: PoolKey, now: Optional[float] = None) -> Optional[ReserveSnapshot]:
        """Return the cached snapshot with its staleness, or None on miss/expiry."""
        state = self._states.get(key)
        if state is None:
            self.stats["misses"] += 1
            return None

        age = (time.time() if now is None else now) - state.refreshed_at
        if age >= self.ttl_seconds:
            self.stats["expired"] += 1
            return None

        is_stale = state.block_number < self.latest_block
        self.stats["stale_hits" if is_stale else "hits"] += 1
        return ReserveSnapshot(state=state, age_seconds=age, is_stale=is_stale)

    async def get_or_refresh(self, key: PoolKey, timeout: Optional[float] = None) -> Optional[ReserveSnapshot]:
        """
        Return a fresh snapshot, refreshing synchronously on miss or staleness.

        Returns None when the pool does not exist on the venue.

        Raises:
            NetworkError: If the refresh does not finish before the deadline.
        """
        snapshot = self.get(key)
        if snapshot is not None and not snapshot.is_stale:
            return snapshot

        deadline = timeout if timeout is not None else self.refresh_timeout
        try:
            state = await asyncio.wait_for(self.refresh(key), timeout=deadline)
        except asyncio.TimeoutError as e:
            raise NetworkError(f"Reserve refresh for {key} missed its deadline") from e

        if state is None:
            return None
        return ReserveSnapshot(state=state, age_seconds=0.0, is_stale=state.block_number < self.latest_block)

    async def refresh(self, key: PoolKey) -> Optional[PoolState]:
        """Fetch reserves for ``key`` and swap in a new snapshot."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            current = self._states.get(key)
            if current is not None and self.latest_block and current.block_number >= self.latest_block \
                    and time.time() - current.refreshed_at < self.ttl_seconds:
                # Another worker refreshed while we waited on the lock
                return current

            try:
                pair = await self._resolve_pair(key)
                if pair is None:
                    return None

                token0 = self._token0.get(pair)
                if token0 is None:
                    token0 = await self.node.get_token0(pair)
                    self._token0[pair] = token0

                block_number = self.latest_block or await self.node.get_block_number()
                reserve0, reserve1, _ = await self.node.get_reserves(pair, block_identifier=block_number)
            except NetworkError:
                self.stats["refresh_failures"] += 1
                raise

            state = PoolState(
                key=key,
                pair_address=pair,
                token0=token0,
                reserve0=reserve0,
                reserve1=reserve1,
                block_number=block_number,
            )
            self._states[key] = state
            self.stats["refreshes"] += 1
            return state

    async def _resolve_pair(self, key: PoolKey) -> Optional[str]:
        pair = self._pairs.get(key)
        if pair is not None:
            return pair

        missing_until = self._missing_pairs.get(key)
        if missing_until is not None and time.time() < missing_until:
            return None

        factory = self.factories.get(key.venue)
        if factory is None:
            logger.debug(f"No factory configured for venue {key.venue}")
            return None

        pair = await self.node.get_pair(factory, key.token_a, key.token_b)
        if pair is None:
            self._missing_pairs[key] = time.time() + self.missing_pair_ttl_seconds
            return None

        self._missing_pairs.pop(key, None)
        self._pairs[key] = pair
        return pair

    def invalidate(self, key: PoolKey) -> None:
        """Drop the snapshot so the next read refreshes."""
        self._states.pop(key, None)

    async def on_new_block(self, block_number: int, watched: Optional[Iterable[PoolKey]] = None) -> None:
        """
        Mark older snapshots stale, evict expired entries and eagerly refresh pools.

        Args:
            block_number: New latest block
            watched: Pools to refresh (those with live opportunities). When
                None every unexpired snapshot is refreshed.
        """
        if block_number <= self.latest_block:
            return
        self.latest_block = block_number

        evicted = self.evict_expired()
        if evicted:
            logger.debug(f"Block {block_number}: evicted {evicted} expired pool snapshots")

        keys = list(self._states) if watched is None else list(watched)
        if not keys:
            return

        results = await asyncio.gather(*(self.refresh(key) for key in keys), return_exceptions=True)
        failures = [r for r in results if isinstance(r, Exception)]
        if failures:
            logger.warning(f"Block {block_number}: {len(failures)}/{len(keys)} pool refreshes failed")

    def evict_expired(self, now: Optional[float] = None) -> int:
        """Forget snapshots, pair lookups and locks of pools not refreshed within the TTL."""
        current = time.time() if now is None else now
        expired = [key for key, state in self._states.items() if current - state.refreshed_at >= self.ttl_seconds]
        for key in expired:
            state = self._states.pop(key)
            self._pairs.pop(key, None)
            self._token0.pop(state.pair_address, None)
            lock = self._locks.get(key)
            if lock is not None and not lock.locked():
                del self._locks[key]

        for key in [k for k, until in self._missing_pairs.items() if current >= until]:
            del self._missing_pairs[key]

        self.stats["evicted"] += len(expired)
        return len(expired)

    def put(self, state: PoolState) -> None:
        """Install a snapshot directly (used for seeding and by tests)."""
        self._states[state.key] = state

    @property
    def tracked_pools(self) -> int:
        return len(self._states)

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "tracked_pools": self.tracked_pools, "latest_block": self.latest_block}
