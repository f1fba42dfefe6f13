"""Circuit breaker guarding relay submissions."""
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from ..errors import CircuitOpenError, NetworkError

logger = logging.getLogger(__name__)
alerts = logging.getLogger("sandwich_engine.alerts")

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Opens after ``failure_threshold`` consecutive network failures.

    While open every call raises CircuitOpenError. After ``cooldown_seconds``
    one probe call is let through (half-open); its success closes the circuit,
    its failure opens it again for another cool-down.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        name: str = "relays",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.name = name
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False

        self.stats = {"opened": 0, "rejected_calls": 0}

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._opened_at is not None \
                and self._clock() - self._opened_at >= self.cooldown_seconds:
            self._state = CircuitState.HALF_OPEN
            self._probe_in_flight = False
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def before_call(self) -> None:
        """Raise CircuitOpenError unless a call may proceed."""
        state = self.state
        if state == CircuitState.OPEN:
            self.stats["rejected_calls"] += 1
            raise CircuitOpenError(f"Circuit {self.name} open")
        if state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                self.stats["rejected_calls"] += 1
                raise CircuitOpenError(f"Circuit {self.name} half-open, probe in flight")
            self._probe_in_flight = True

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            alerts.warning(f"Circuit {self.name} closed after successful probe")
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = None
        self._probe_in_flight = False

    def record_failure(self) -> None:
        self._failures += 1
        if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            self._open()

    def release_probe(self) -> None:
        """End a half-open probe that produced no verdict so the next call may probe again."""
        self._probe_in_flight = False

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._probe_in_flight = False
        self.stats["opened"] += 1
        alerts.error(
            f"Circuit {self.name} opened after {self._failures} consecutive failures; "
            f"pausing for {self.cooldown_seconds}s"
        )

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``operation`` through the breaker.

        NetworkError counts as a failure. Any other exception, cancellation
        included, leaves the failure count alone but frees the probe slot.
        """
        self.before_call()
        try:
            result = await operation()
        except NetworkError:
            self.record_failure()
            raise
        except BaseException:
            self.release_probe()
            raise
        self.record_success()
        return result

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "state": self.state.value, "consecutive_failures": self._failures}
