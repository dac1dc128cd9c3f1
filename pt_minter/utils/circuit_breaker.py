"""Circuit breaker guarding the mint RPC endpoints.

After ``failure_threshold`` consecutive pre-broadcast failures the breaker
opens and mints are refused before a transaction is even built. Once
``recovery_timeout`` has elapsed a limited number of probe requests go
through (HALF_OPEN): a success closes the breaker, a failure reopens it.
"""

from __future__ import annotations

import time
from enum import Enum

import structlog

from pt_minter.api.metrics import CIRCUIT_BREAKER_STATE

log = structlog.get_logger()


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        half_open_max: int = 1,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.probe_limit = half_open_max
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._probes_left = 0

    def _transition(self, new_state: CircuitState, **context: object) -> None:
        if new_state is self._state:
            return
        previous, self._state = self._state, new_state
        if new_state is CircuitState.OPEN:
            self._opened_at = time.monotonic()
        elif new_state is CircuitState.HALF_OPEN:
            self._probes_left = self.probe_limit
        log_fn = log.warning if new_state is CircuitState.OPEN else log.info
        log_fn("circuit_breaker_transition", name=self.name, old=previous.value, new=new_state.value, **context)
        CIRCUIT_BREAKER_STATE.labels(target=self.name).set(1 if new_state is CircuitState.OPEN else 0)

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self.retry_after == 0.0:
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def retry_after(self) -> float:
        """Seconds until an open breaker lets a probe through (0 when not open)."""
        if self._state is not CircuitState.OPEN:
            return 0.0
        return max(0.0, self._opened_at + self.recovery_timeout - time.monotonic())

    def allow_request(self) -> bool:
        state = self.state
        if state is CircuitState.HALF_OPEN and self._probes_left > 0:
            self._probes_left -= 1
            return True
        return state is CircuitState.CLOSED

    def release_probe(self) -> None:
        """Return a probe slot taken by a call that ended without an outcome."""
        if self._state is CircuitState.HALF_OPEN:
            self._probes_left = min(self._probes_left + 1, self.probe_limit)

    def record_success(self) -> None:
        self._consecutive_failures = 0
        self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN, reason="probe_failed")
        elif self._consecutive_failures >= self.failure_threshold:
            self._transition(CircuitState.OPEN, failures=self._consecutive_failures)

    def reset(self) -> None:
        self._consecutive_failures = 0
        self._transition(CircuitState.CLOSED)
