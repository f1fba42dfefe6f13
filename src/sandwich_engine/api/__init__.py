"""HTTP surface for health probes and engine statistics."""
from .health import router

__all__ = ["router"]
