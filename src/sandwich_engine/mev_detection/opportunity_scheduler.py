"""
Opportunity Scheduler.

Keeps at most one live opportunity per pool and hands the most profitable
queued one to the bundle builder while the in-flight limit allows.
"""
import logging
from typing import Callable, Dict, List, Optional, Set

from ..models import PoolKey
from .opportunity_models import Opportunity, OpportunityStatus

logger = logging.getLogger(__name__)


class OpportunityScheduler:
    """Per-pool dedupe, priority by net profit and an in-flight bundle limit."""

    def __init__(self, max_inflight: int = 4):
        self.max_inflight = max_inflight
        self._queued: Dict[PoolKey, Opportunity] = {}
        self._inflight: Dict[PoolKey, Opportunity] = {}

        self.stats = {
            "offered": 0,
            "queued": 0,
            "replaced": 0,
            "dropped": 0,
            "dispatched": 0,
            "expired": 0,
            "released": 0,
        }

    def offer(self, opportunity: Opportunity) -> bool:
        """
        Queue an opportunity, keeping at most one per pool.

        A queued opportunity on the same pool is replaced when the newcomer was
        computed against a newer snapshot block, or the same block with higher
        net profit. Pools with a bundle in flight accept nothing.

        Returns:
            True if the opportunity is now queued.
        """
        self.stats["offered"] += 1
        key = opportunity.pool_key

        if key in self._inflight:
            self.stats["dropped"] += 1
            logger.debug(f"Pool {key} busy, dropping {opportunity.opportunity_id}")
            return False

        current = self._queued.get(key)
        if current is not None:
            newer = opportunity.snapshot_block > current.snapshot_block
            better = (opportunity.snapshot_block == current.snapshot_block
                      and opportunity.net_profit > current.net_profit)
            if not (newer or better):
                self.stats["dropped"] += 1
                return False

            current.transition_to(OpportunityStatus.REJECTED)
            self.stats["replaced"] += 1
            logger.debug(f"Replaced {current.opportunity_id} with {opportunity.opportunity_id} on {key}")

        if opportunity.status == OpportunityStatus.VETTED:
            opportunity.transition_to(OpportunityStatus.QUEUED)
        elif opportunity.status == OpportunityStatus.DETECTED:
            opportunity.transition_to(OpportunityStatus.VETTED)
            opportunity.transition_to(OpportunityStatus.QUEUED)

        self._queued[key] = opportunity
        self.stats["queued"] += 1
        return True

    def next_ready(self) -> Optional[Opportunity]:
        """Pop the highest net-profit queued opportunity and mark it BUILDING."""
        if not self._queued or len(self._inflight) >= self.max_inflight:
            return None

        key, opportunity = max(self._queued.items(), key=lambda item: item[1].net_profit)
        del self._queued[key]
        opportunity.transition_to(OpportunityStatus.BUILDING)
        self._inflight[key] = opportunity
        self.stats["dispatched"] += 1
        return opportunity

    def release(self, pool_key: PoolKey, status: Optional[OpportunityStatus] = None) -> Optional[Opportunity]:
        """
        Free the in-flight slot of ``pool_key``.

        Args:
            pool_key: Pool whose bundle finished
            status: Terminal status to record if the opportunity is not terminal yet
        """
        opportunity = self._inflight.pop(pool_key, None)
        if opportunity is None:
            return None

        if status is not None and opportunity.status != status and not opportunity.is_terminal:
            opportunity.transition_to(status)
        self.stats["released"] += 1
        return opportunity

    def expire(self, current_block: int, is_pending: Optional[Callable[[str], bool]] = None) -> List[Opportunity]:
        """
        Drop queued opportunities whose block or deadline passed or whose victim vanished.

        Args:
            current_block: Latest confirmed block
            is_pending: Returns False for victims no longer in the mempool
        """
        expired = []
        for key, opportunity in list(self._queued.items()):
            gone = is_pending is not None and not is_pending(opportunity.victim.tx_hash)
            if opportunity.is_expired(current_block=current_block) or gone:
                del self._queued[key]
                opportunity.transition_to(OpportunityStatus.EXPIRED)
                expired.append(opportunity)

        if expired:
            self.stats["expired"] += len(expired)
            logger.debug(f"Block {current_block}: expired {len(expired)} queued opportunities")
        return expired

    def queued(self) -> List[Opportunity]:
        return list(self._queued.values())

    def queued_for(self, pool_key: PoolKey) -> Optional[Opportunity]:
        return self._queued.get(pool_key)

    def active_pool_keys(self) -> Set[PoolKey]:
        """Pools with a queued or in-flight opportunity."""
        return set(self._queued) | set(self._inflight)

    def is_busy(self, pool_key: PoolKey) -> bool:
        return pool_key in self._inflight

    @property
    def queued_count(self) -> int:
        return len(self._queued)

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    def get_stats(self) -> Dict[str, int]:
        return {**self.stats, "queued_now": self.queued_count, "inflight_now": self.inflight_count}
