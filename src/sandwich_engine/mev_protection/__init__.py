"""
Private Submission Layer.

Sends sandwich bundles to private relays, tracks whether they land and
suspends submission through a circuit breaker when relays stop answering.
"""
from .circuit_breaker import CircuitBreaker, CircuitState
from .flashbots_client import RelayClient, create_relay_client
from .submission_gateway import SubmissionGateway

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "RelayClient",
    "create_relay_client",
    "SubmissionGateway",
]
