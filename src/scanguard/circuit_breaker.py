"""Circuit breaker pattern for dependency failures.

Implements a per-dependency circuit breaker to prevent repeated calls to a
failing dependency (reputation scanner, remote ledger). Breakers are owned by
a CircuitBreakerManager, which in turn is owned by a ResilienceGateway; there
is no module-level registry.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

from scanguard.config.defaults import (
    CIRCUIT_BREAKER_FAILURE_THRESHOLD,
    CIRCUIT_BREAKER_RESET_TIMEOUT_SECONDS,
)
from scanguard.errors import CircuitOpen, ConflictDiscarded, ValidationError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing - reject calls
    HALF_OPEN = "half_open"  # Testing if recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker.

    Attributes:
        failure_threshold: Number of consecutive failures before opening the circuit.
        reset_timeout: Seconds to wait in OPEN state before allowing a probe.
        ignored_exceptions: Exceptions that mean the dependency answered but the
            request itself was rejected. They propagate without counting as failures.
    """

    failure_threshold: int = CIRCUIT_BREAKER_FAILURE_THRESHOLD
    reset_timeout: float = CIRCUIT_BREAKER_RESET_TIMEOUT_SECONDS
    ignored_exceptions: tuple = field(
        default_factory=lambda: (ValidationError, ConflictDiscarded)
    )

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        """Create config from environment variables with config defaults as fallbacks."""
        return cls(
            failure_threshold=int(os.environ.get(
                "SCANGUARD_FAILURE_THRESHOLD", str(CIRCUIT_BREAKER_FAILURE_THRESHOLD))),
            reset_timeout=float(os.environ.get(
                "SCANGUARD_RESET_TIMEOUT", str(CIRCUIT_BREAKER_RESET_TIMEOUT_SECONDS))),
        )


@dataclass
class CircuitBreakerState:
    """Point-in-time view of one breaker."""
    dependency_key: str
    state: str
    failure_count: int
    last_failure_at: Optional[float]
    next_attempt_at: Optional[float]

    def to_dict(self) -> dict:
        return asdict(self)


class CircuitBreaker:
    """Circuit breaker for one named dependency.

    CLOSED -> OPEN after `failure_threshold` consecutive failures.
    OPEN -> HALF_OPEN on the first call after `next_attempt_at`.
    HALF_OPEN admits a single probe; its outcome closes or reopens the circuit.

    All state changes are single-step under a lock; nothing is held across
    the protected call itself.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._next_attempt_at: Optional[float] = None
        self._probe_in_flight = False

        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        return self._state

    @property
    def failure_count(self) -> int:
        """Get current failure count."""
        return self._failure_count

    @property
    def is_available(self) -> bool:
        """Check if the circuit would admit a call right now (no side effects)."""
        if self._state == CircuitState.CLOSED:
            return True
        if self._state == CircuitState.OPEN:
            return self._next_attempt_at is not None and time.time() >= self._next_attempt_at
        return not self._probe_in_flight

    def is_ignored(self, error: BaseException) -> bool:
        return isinstance(error, self.config.ignored_exceptions)

    def before_call(self) -> None:
        """Admit a call or raise CircuitOpen without touching the dependency."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return

            if self._state == CircuitState.OPEN:
                if self._next_attempt_at is not None and time.time() >= self._next_attempt_at:
                    self._transition(CircuitState.HALF_OPEN, reason="reset_timeout_elapsed")
                else:
                    raise CircuitOpen(self.name, retry_at=self._next_attempt_at)

            # HALF_OPEN: only one probe at a time
            if self._probe_in_flight:
                raise CircuitOpen(self.name, retry_at=self._next_attempt_at)
            self._probe_in_flight = True

    def record_success(self) -> None:
        """Record a successful call. Always resets the failure count."""
        with self._lock:
            self._failure_count = 0
            self._probe_in_flight = False
            if self._state != CircuitState.CLOSED:
                self._next_attempt_at = None
                self._transition(CircuitState.CLOSED, reason="recovery_success")

    def record_failure(self) -> None:
        """Record a failed call."""
        with self._lock:
            now = time.time()
            self._failure_count += 1
            self._last_failure_time = now

            if self._state == CircuitState.HALF_OPEN:
                # Any failure in half-open reopens the circuit
                self._probe_in_flight = False
                self._next_attempt_at = now + self.config.reset_timeout
                self._transition(CircuitState.OPEN, reason="probe_failed")
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.config.failure_threshold
            ):
                self._next_attempt_at = now + self.config.reset_timeout
                self._transition(CircuitState.OPEN, reason="threshold_exceeded")

    def release_probe(self) -> None:
        """Give back a half-open probe slot whose call ended without a verdict."""
        with self._lock:
            self._probe_in_flight = False

    def _transition(self, to_state: CircuitState, reason: str) -> None:
        from_state = self._state
        self._state = to_state
        log = logger.warning if to_state == CircuitState.OPEN else logger.info
        log(
            "circuit_breaker_state_change",
            extra={
                "event": "circuit_breaker_state_change",
                "dependency": self.name,
                "from_state": from_state.value,
                "to_state": to_state.value,
                "reason": reason,
                "failure_count": self._failure_count,
                "threshold": self.config.failure_threshold,
                "next_attempt_at": self._next_attempt_at,
            }
        )

    def snapshot(self) -> CircuitBreakerState:
        with self._lock:
            return CircuitBreakerState(
                dependency_key=self.name,
                state=self._state.value,
                failure_count=self._failure_count,
                last_failure_at=self._last_failure_time,
                next_attempt_at=self._next_attempt_at,
            )

    def get_status(self) -> dict:
        """Get circuit breaker status."""
        status = self.snapshot().to_dict()
        status["is_available"] = self.is_available
        return status

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
            self._next_attempt_at = None
            self._probe_in_flight = False


class CircuitBreakerManager:
    """Lazily creates and owns one breaker per dependency key."""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._config = config or CircuitBreakerConfig()
        self._lock = threading.Lock()

    def get_breaker(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
    ) -> CircuitBreaker:
        """Get or create a circuit breaker for a name with optional custom config."""
        with self._lock:
            if name not in self._breakers:
                self._breakers[name] = CircuitBreaker(name, config or self._config)
            return self._breakers[name]

    def names(self) -> list[str]:
        with self._lock:
            return list(self._breakers)

    def get_all_status(self) -> dict:
        """Get status of all circuit breakers."""
        with self._lock:
            breakers = list(self._breakers.items())
        return {name: breaker.get_status() for name, breaker in breakers}

    def reset_all(self) -> None:
        """Reset all circuit breakers."""
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()
