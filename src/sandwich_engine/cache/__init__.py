"""Caching layer: pool reserve snapshots and optional Redis persistence."""
from .pool_state_cache import LiquidityStateCache

__all__ = ["LiquidityStateCache"]
