from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from intenthealer.config.schema import CircuitBreakerConfig

log = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True, slots=True)
class CircuitStats:
    state: CircuitState
    failure_count: int
    success_count: int
    half_open_attempts: int
    seconds_until_half_open: float


class CircuitBreaker:
    """Stops calling the reasoning provider after sustained failure.

    CLOSED -> OPEN after ``failure_threshold`` consecutive failures.
    OPEN -> HALF_OPEN once ``open_duration_seconds`` have elapsed.
    HALF_OPEN -> CLOSED after ``success_threshold_to_close`` successes,
    HALF_OPEN -> OPEN on any failure.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._half_open_attempts = 0
        self._opened_at: float | None = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._advance()
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failures

    @property
    def success_count(self) -> int:
        with self._lock:
            return self._successes

    def is_healing_allowed(self) -> bool:
        if not self.config.enabled:
            return True
        with self._lock:
            self._advance()
            if self._state is CircuitState.CLOSED:
                return True
            if self._state is CircuitState.OPEN:
                return False
            self._half_open_attempts += 1
            return self._half_open_attempts <= self.config.half_open_max_attempts

    def record_success(self) -> None:
        if not self.config.enabled:
            return
        with self._lock:
            self._successes += 1
            if self._state is CircuitState.HALF_OPEN:
                if self._successes >= self.config.success_threshold_to_close:
                    self._transition(CircuitState.HALF_OPEN, CircuitState.CLOSED)
            elif self._state is CircuitState.CLOSED:
                if self._successes >= self.config.success_threshold_to_close:
                    self._failures = 0
                    self._successes = 0

    def record_failure(self) -> None:
        if not self.config.enabled:
            return
        with self._lock:
            self._failures += 1
            self._successes = 0
            if self._state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.HALF_OPEN, CircuitState.OPEN)
            elif self._state is CircuitState.CLOSED and self._failures >= self.config.failure_threshold:
                self._transition(CircuitState.CLOSED, CircuitState.OPEN)

    def record_refusal(self) -> None:
        """Guardrail refusals say nothing about provider health."""

    def time_until_half_open(self) -> float:
        with self._lock:
            if self._state is not CircuitState.OPEN or self._opened_at is None:
                return 0.0
            remaining = self.config.open_duration_seconds - (self._clock() - self._opened_at)
            return max(0.0, remaining)

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._reset_counters()
            self._opened_at = None
        log.info("Circuit breaker reset")

    def force_open(self) -> None:
        with self._lock:
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            self._half_open_attempts = 0
        log.info("Circuit breaker forced open")

    def stats(self) -> CircuitStats:
        remaining = self.time_until_half_open()
        with self._lock:
            return CircuitStats(
                state=self._state,
                failure_count=self._failures,
                success_count=self._successes,
                half_open_attempts=self._half_open_attempts,
                seconds_until_half_open=remaining,
            )

    def _advance(self) -> None:
        if self._state is not CircuitState.OPEN or self._opened_at is None:
            return
        if self._clock() - self._opened_at >= self.config.open_duration_seconds:
            self._transition(CircuitState.OPEN, CircuitState.HALF_OPEN)

    def _transition(self, expected: CircuitState, target: CircuitState) -> bool:
        # Callers hold the lock; the state check makes each edge compare-and-set.
        if self._state is not expected:
            return False
        self._state = target
        if target is CircuitState.OPEN:
            self._opened_at = self._clock()
            self._half_open_attempts = 0
        elif target is CircuitState.HALF_OPEN:
            self._half_open_attempts = 0
            self._successes = 0
        else:
            self._reset_counters()
            self._opened_at = None
        log.info("Circuit breaker %s -> %s", expected.value, target.value)
        return True

    def _reset_counters(self) -> None:
        self._failures = 0
        self._successes = 0
        self._half_open_attempts = 0
