"""
Sandwich Opportunity Detection Module.

Mempool ingest, swap decoding, optimal sizing and scheduling of sandwich
opportunities. The engine that wires these together lives in
``sandwich_engine.mev_detection.engine``; import it from there.
"""
from .opportunity_models import (
    Opportunity,
    OpportunityStatus,
    VictimReference,
)
from .mempool_monitor import (
    MempoolConfig,
    MempoolMonitor,
    create_mempool_monitor,
)
from .opportunity_scheduler import OpportunityScheduler
from .pipeline import Continue, Reject, RejectReason, run_stages
from .profit_calculator import (
    SandwichSizer,
    SizingResult,
    VictimWouldRevertError,
    create_sizer_from_config,
)
from .swap_decoder import SwapDecoder

__all__ = [
    # Models
    "Opportunity",
    "OpportunityStatus",
    "VictimReference",

    # Ingest
    "MempoolConfig",
    "MempoolMonitor",
    "create_mempool_monitor",

    # Evaluation
    "Continue",
    "Reject",
    "RejectReason",
    "run_stages",
    "SwapDecoder",
    "SandwichSizer",
    "SizingResult",
    "VictimWouldRevertError",
    "create_sizer_from_config",

    # Scheduling
    "OpportunityScheduler",
]
