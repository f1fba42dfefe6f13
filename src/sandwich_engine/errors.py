"""
Engine exception hierarchy.

Most of these are expected outcomes of evaluating a pending transaction
rather than faults: the engine maps them to discard reasons and counters.
Only network failures, the circuit breaker and persistent relay rejections
surface as operator alerts.
"""
from typing import Optional


class EngineError(Exception):
    """Base class for all engine errors."""


class DecodeError(EngineError):
    """Call data is not a recognized swap."""


class StaleStateError(EngineError):
    """Pool reserves changed while an evaluation was in progress."""


class UnsafeTokenError(EngineError):
    """A token failed one of the safety vetting stages."""

    def __init__(self, token: str, reason: str, stage: Optional[str] = None):
        super().__init__(f"Token {token} unsafe ({stage or 'unknown'}): {reason}")
        self.token = token
        self.reason = reason
        self.stage = stage


class UnprofitableError(EngineError):
    """No counter-trade size clears gas cost plus minimum profit."""


class UnsupportedRouteError(EngineError):
    """Swap route cannot be priced with single-pool constant-product math."""


class SimulationRevertError(EngineError):
    """A dry-run call reverted."""

    def __init__(self, message: str, revert_reason: Optional[str] = None):
        super().__init__(message)
        self.revert_reason = revert_reason


class SubmissionRejectedError(EngineError):
    """A relay refused the bundle."""

    def __init__(self, relay: str, message: str):
        super().__init__(f"Relay {relay} rejected bundle: {message}")
        self.relay = relay


class NetworkError(EngineError):
    """RPC or relay transport failure, including deadline expiry."""


class CircuitOpenError(NetworkError):
    """Submissions are suspended until the circuit breaker cool-down elapses."""


class NonceConflictError(EngineError):
    """The account nonce used for a bundle is already taken."""


class GasCeilingExceededError(EngineError):
    """Outbidding the victim would exceed the configured gas price ceiling."""


class InvalidTransitionError(EngineError):
    """Opportunity status change not allowed by the lifecycle."""
