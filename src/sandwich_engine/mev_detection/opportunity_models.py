"""
Sandwich Opportunity Data Models.

Defines the opportunity record that flows from the profit calculator through
the scheduler and bundle builder to the submission gateway, together with its
lifecycle state machine.
"""
import time
import uuid
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, Field

from ..errors import InvalidTransitionError
from ..models import PoolKey


class OpportunityStatus(str, Enum):
    """Status of sandwich opportunity lifecycle."""
    DETECTED = "detected"           # Sized and found profitable
    VETTED = "vetted"               # Both tokens passed safety vetting
    QUEUED = "queued"               # Waiting in the scheduler
    BUILDING = "building"           # Bundle under construction
    SUBMITTED = "submitted"         # Sent to relays
    INCLUDED = "included"           # Landed in the target block
    NOT_INCLUDED = "not_included"   # Missed the target block
    EXPIRED = "expired"             # Target block passed or victim gone
    REJECTED = "rejected"           # Discarded by a hard failure


TERMINAL_STATUSES: FrozenSet[OpportunityStatus] = frozenset({
    OpportunityStatus.INCLUDED,
    OpportunityStatus.EXPIRED,
    OpportunityStatus.REJECTED,
})

ACTIVE_STATUSES: FrozenSet[OpportunityStatus] = frozenset({
    OpportunityStatus.BUILDING,
    OpportunityStatus.SUBMITTED,
    OpportunityStatus.NOT_INCLUDED,
})

ALLOWED_TRANSITIONS: Dict[OpportunityStatus, FrozenSet[OpportunityStatus]] = {
    OpportunityStatus.DETECTED: frozenset({
        OpportunityStatus.VETTED, OpportunityStatus.REJECTED, OpportunityStatus.EXPIRED,
    }),
    OpportunityStatus.VETTED: frozenset({
        OpportunityStatus.QUEUED, OpportunityStatus.REJECTED, OpportunityStatus.EXPIRED,
    }),
    OpportunityStatus.QUEUED: frozenset({
        OpportunityStatus.BUILDING, OpportunityStatus.REJECTED, OpportunityStatus.EXPIRED,
    }),
    OpportunityStatus.BUILDING: frozenset({
        OpportunityStatus.SUBMITTED, OpportunityStatus.REJECTED, OpportunityStatus.EXPIRED,
    }),
    OpportunityStatus.SUBMITTED: frozenset({
        OpportunityStatus.INCLUDED, OpportunityStatus.NOT_INCLUDED, OpportunityStatus.REJECTED,
    }),
    OpportunityStatus.NOT_INCLUDED: frozenset({
        OpportunityStatus.BUILDING, OpportunityStatus.EXPIRED,
    }),
}


class VictimReference(BaseModel):
    """The pending swap an opportunity is built around (referenced, never authored)."""

    tx_hash: str = Field(..., description="Hash of the victim transaction")
    sender: str = Field(..., description="Victim account")
    amount_in: int = Field(..., description="Victim input amount", ge=0)
    min_amount_out: int = Field(..., description="Victim minimum output", ge=0)
    priority_fee: int = Field(default=0, description="Victim effective tip per gas", ge=0)


class Opportunity(BaseModel):
    """A sized, profitable counter-trade around one victim swap."""

    opportunity_id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Unique opportunity identifier")
    status: OpportunityStatus = Field(default=OpportunityStatus.DETECTED, description="Current status")

    victim: VictimReference
    pool_key: PoolKey
    pair_address: str = Field(..., description="Pool contract address")
    token_in: str = Field(..., description="Token the bot spends on the front leg")
    token_out: str = Field(..., description="Token the bot receives on the front leg")

    # Sizing
    frontrun_amount: int = Field(..., description="Front-leg input after safety margin", ge=0)
    expected_frontrun_output: int = Field(..., description="Front-leg output", ge=0)
    expected_backrun_output: int = Field(..., description="Back-leg output", ge=0)

    # Profitability (denominated in token_in)
    gross_profit: int = Field(..., description="Back-leg output minus front-leg input")
    gas_cost: int = Field(..., description="Estimated gas cost", ge=0)
    net_profit: int = Field(..., description="Gross profit minus gas cost")
    min_profit: int = Field(default=0, description="Floor asserted on-chain by the back leg", ge=0)

    # Timing
    snapshot_block: int = Field(..., description="Block of the reserve snapshot used", ge=0)
    expiry_block: int = Field(..., description="Last block the opportunity may target", ge=0)
    detected_at: float = Field(default_factory=time.time)
    deadline_at: Optional[float] = Field(None, description="Wall-clock deadline for submission")

    retries: int = Field(default=0, ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        """True once a bundle is being built or is in flight."""
        return self.status in ACTIVE_STATUSES

    def transition_to(self, new_status: OpportunityStatus) -> None:
        """Move to a new lifecycle status, enforcing the allowed transitions."""
        allowed = ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise InvalidTransitionError(
                f"Opportunity {self.opportunity_id}: {self.status.value} -> {new_status.value} not allowed"
            )
        self.status = new_status

    def is_expired(self, current_block: Optional[int] = None, now: Optional[float] = None) -> bool:
        """Check if the target block has passed or the wall-clock deadline elapsed."""
        if current_block is not None and current_block >= self.expiry_block:
            return True
        if self.deadline_at is not None:
            return (time.time() if now is None else now) > self.deadline_at
        return False

    def summary(self) -> Dict[str, Any]:
        return {
            "opportunity_id": self.opportunity_id,
            "status": self.status.value,
            "victim": self.victim.tx_hash,
            "pool": str(self.pool_key),
            "frontrun_amount": self.frontrun_amount,
            "net_profit": self.net_profit,
            "expiry_block": self.expiry_block,
        }
