"""Bundle construction and nonce management."""
from .bundle_builder import BundleBuilder, FeePlan, plan_fees
from .nonce_manager import NonceManager

__all__ = [
    "BundleBuilder",
    "FeePlan",
    "NonceManager",
    "plan_fees",
]
