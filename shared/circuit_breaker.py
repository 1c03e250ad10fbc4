"""
Circuit breaker pattern implementation for resilient service calls.
"""

import time
from enum import Enum
from typing import Dict, Any, Optional, Callable

from shared.logging import get_logger


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreaker:
    """Circuit breaker for a single downstream service.

    CLOSED counts consecutive failures and trips to OPEN at the threshold.
    OPEN rejects calls until ``recovery_timeout`` has elapsed since it opened,
    then admits exactly one trial call in HALF_OPEN. A failed trial reopens
    the breaker immediately; any success closes it and clears the counter.
    A trial abandoned without an outcome must be handed back with
    ``release_trial`` so the next call can take its place.
    """

    def __init__(self,
                 name: str = "default",
                 failure_threshold: int = 3,
                 recovery_timeout: float = 30.0,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self.logger = get_logger(f"circuit_breaker.{name}")

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def opened_at(self) -> Optional[float]:
        return self._opened_at

    def _can_attempt_reset(self) -> bool:
        """Check if enough time has passed to attempt a reset."""
        return (self._clock() - self._opened_at) >= self.recovery_timeout

    def allow_request(self) -> bool:
        """Decide whether the next call may reach the network."""
        if self._state == CircuitBreakerState.CLOSED:
            return True

        if self._state == CircuitBreakerState.OPEN:
            if self._can_attempt_reset():
                self._state = CircuitBreakerState.HALF_OPEN
                self._trial_in_flight = True
                self.logger.info("Circuit breaker transitioning to half-open", service=self.name)
                return True
            return False

        # HALF_OPEN: only the single trial call is admitted
        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    def record_success(self):
        """Success always heals the breaker."""
        if self._state != CircuitBreakerState.CLOSED:
            self.logger.info("Circuit breaker reset to CLOSED after successful call",
                             service=self.name, previous_state=self._state.value)
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._trial_in_flight = False

    def record_failure(self):
        """Record a failure and update state."""
        self._failure_count += 1
        self._trial_in_flight = False

        if self._state == CircuitBreakerState.HALF_OPEN:
            self._open()
            self.logger.warning("Half-open trial failed, circuit breaker reopened",
                                service=self.name, failure_count=self._failure_count)
            return

        if self._state == CircuitBreakerState.CLOSED and self._failure_count >= self.failure_threshold:
            self._open()
            self.logger.warning(
                "Circuit breaker opened due to failures",
                service=self.name,
                failure_count=self._failure_count,
                threshold=self.failure_threshold
            )

    def release_trial(self):
        """Give back a half-open trial that ended without an outcome (e.g. cancelled)."""
        if self._state == CircuitBreakerState.HALF_OPEN and self._trial_in_flight:
            self._trial_in_flight = False
            self.logger.info("Half-open trial abandoned", service=self.name)

    def _open(self):
        self._state = CircuitBreakerState.OPEN
        self._opened_at = self._clock()

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "opened_at": self._opened_at,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout
        }

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        return self._state == CircuitBreakerState.OPEN


class CircuitBreakerRegistry:
    """Per-process map of breakers keyed by downstream service name.

    Built once at gateway startup and handed to the router and aggregator.
    Breakers are created on the first recorded failure; a service that has
    never failed has no breaker and is always allowed through.
    """

    def __init__(self,
                 failure_threshold: int = 3,
                 recovery_timeout: float = 30.0,
                 clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self.logger = get_logger("gateway.circuit_breakers")

    def get(self, name: str) -> Optional[CircuitBreaker]:
        return self.circuit_breakers.get(name)

    def get_circuit_breaker(self, name: str) -> CircuitBreaker:
        """Get or create a circuit breaker."""
        if name not in self.circuit_breakers:
            self.circuit_breakers[name] = CircuitBreaker(
                name=name,
                failure_threshold=self.failure_threshold,
                recovery_timeout=self.recovery_timeout,
                clock=self._clock
            )
            self.logger.info("Created circuit breaker", name=name)

        return self.circuit_breakers[name]

    def allow_request(self, name: str) -> bool:
        breaker = self.circuit_breakers.get(name)
        return breaker is None or breaker.allow_request()

    def record_success(self, name: str):
        breaker = self.circuit_breakers.get(name)
        if breaker is not None:
            breaker.record_success()

    def record_failure(self, name: str):
        self.get_circuit_breaker(name).record_failure()

    def release(self, name: str):
        breaker = self.circuit_breakers.get(name)
        if breaker is not None:
            breaker.release_trial()

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        """Get states of all circuit breakers."""
        return {
            name: cb.get_state()
            for name, cb in self.circuit_breakers.items()
        }
