"""Account nonce allocation for bundle transactions."""
import asyncio
import logging
from typing import Any, List, Optional

logger = logging.getLogger(__name__)


class NonceManager:
    """
    Hands out consecutive nonces for the bot account.

    The counter is seeded lazily from the node's pending transaction count and
    guarded by an asyncio.Lock, so two bundles built concurrently never share
    a nonce.
    """

    def __init__(self, node: Any, address: str):
        self.node = node
        self.address = address
        self._next_nonce: Optional[int] = None
        self._lock = asyncio.Lock()

    async def reserve(self, count: int = 1) -> List[int]:
        """Reserve ``count`` consecutive nonces atomically."""
        if count < 1:
            raise ValueError("count must be positive")

        async with self._lock:
            if self._next_nonce is None:
                self._next_nonce = await self.node.get_transaction_count(self.address, "pending")
                logger.debug(f"Nonce for {self.address} synced at {self._next_nonce}")

            first = self._next_nonce
            self._next_nonce += count
            return list(range(first, first + count))

    async def resync(self) -> int:
        """Reload the counter from the node after a conflict or a dropped bundle."""
        async with self._lock:
            self._next_nonce = await self.node.get_transaction_count(self.address, "pending")
            logger.info(f"Nonce for {self.address} resynced to {self._next_nonce}")
            return self._next_nonce

    @property
    def next_nonce(self) -> Optional[int]:
        return self._next_nonce
