"""
Evaluation pipeline combinators.

Every filtering stage is a function taking the current value and returning
either ``Continue(next_value)`` or ``Reject(reason)``. ``run_stages`` threads a
value through the stages and stops at the first rejection, so each stage can
be unit tested on its own.
"""
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RejectReason(str, Enum):
    """Why a candidate left the pipeline."""
    NOT_TRACKED = "not_tracked"
    NOT_A_SWAP = "not_a_swap"
    EXPIRED_DEADLINE = "expired_deadline"
    UNSUPPORTED_ROUTE = "unsupported_route"
    UNSUPPORTED_BASE_TOKEN = "unsupported_base_token"
    UNSAFE_TOKEN = "unsafe_token"
    POOL_NOT_FOUND = "pool_not_found"
    STALE_STATE = "stale_state"
    VICTIM_WOULD_REVERT = "victim_would_revert"
    UNPROFITABLE = "unprofitable"
    SIMULATION_REVERT = "simulation_revert"
    NETWORK = "network"
    TIMEOUT = "timeout"
    SCHEDULER_DROPPED = "scheduler_dropped"


@dataclass(frozen=True)
class Continue(Generic[T]):
    """Stage passed; carry ``value`` to the next stage."""
    value: T


@dataclass(frozen=True)
class Reject:
    """Stage failed; the candidate is discarded."""
    reason: RejectReason
    detail: str = ""


StageResult = Union[Continue, Reject]
Stage = Callable[[Any], Union[StageResult, Awaitable[StageResult]]]


async def run_stages(value: Any, *stages: Stage) -> StageResult:
    """
    Run ``value`` through ``stages`` in order, short-circuiting on rejection.

    Stages may be plain or async callables.
    """
    result: StageResult = Continue(value)
    for stage in stages:
        outcome = stage(result.value)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        if isinstance(outcome, Reject):
            return outcome
        result = outcome
    return result


def reject_unless(predicate: Callable[[Any], bool], reason: RejectReason, detail: str = "") -> Stage:
    """Build a stage that passes the value through when ``predicate`` holds."""
    def stage(value: Any) -> StageResult:
        if predicate(value):
            return Continue(value)
        return Reject(reason, detail)
    return stage


def from_optional(value: Optional[T], reason: RejectReason, detail: str = "") -> StageResult:
    """Lift an optional result into a stage result."""
    if value is None:
        return Reject(reason, detail)
    return Continue(value)
