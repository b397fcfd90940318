"""
CIRCUIT BREAKER — exchange call guard
======================================
Wraps outbound exchange calls (order placement / cancellation):
- CLOSED: calls pass; consecutive failures are counted
- OPEN: calls fail fast with CircuitBreakerError until the cool-off elapses
- HALF_OPEN: a few probe calls decide between CLOSED and OPEN again

The clock is injectable so tests can step time.
"""

import time
import threading
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type

import config

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerError(Exception):
    """Raised instead of calling through while the circuit is open."""

    def __init__(self, name: str, retry_in: float):
        super().__init__(f"Circuit '{name}' is OPEN (retry in {retry_in:.1f}s)")
        self.name = name
        self.retry_in = retry_in


class CircuitBreaker:

    def __init__(
        self,
        name: str,
        failure_threshold: int = config.CIRCUIT_FAILURE_THRESHOLD,
        timeout_seconds: float = config.CIRCUIT_TIMEOUT_SECONDS,
        half_open_max_calls: int = config.CIRCUIT_HALF_OPEN_CALLS,
        counted: Tuple[Type[BaseException], ...] = (Exception,),
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            failure_threshold: consecutive failures that open the circuit
            timeout_seconds: how long the circuit stays open
            half_open_max_calls: successful probes needed to close it again
            counted: exception types that count as failures; anything else
                propagates without touching the counters
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout_seconds = timeout_seconds
        self.half_open_max_calls = half_open_max_calls
        self._counted = counted
        self._clock = clock

        self._lock = threading.RLock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._probe_successes = 0
        self._opened_at: Optional[float] = None
        self._total_failures = 0
        self._rejected_calls = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _maybe_half_open(self) -> None:
        if self._state is CircuitState.OPEN and \
                self._clock() - self._opened_at >= self.timeout_seconds:
            logger.info(f"🔄 [{self.name}] circuit HALF_OPEN, probing")
            self._state = CircuitState.HALF_OPEN
            self._probe_successes = 0

    def _open(self, why: str) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        logger.error(f"🚨 [{self.name}] circuit OPEN: {why}")

    def _on_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._probe_successes += 1
                if self._probe_successes >= self.half_open_max_calls:
                    logger.info(f"✅ [{self.name}] circuit CLOSED")
                    self._state = CircuitState.CLOSED
                    self._failures = 0
                    self._opened_at = None
            else:
                self._failures = 0

    def _on_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._total_failures += 1
            if self._state is CircuitState.HALF_OPEN:
                self._open("probe failed")
            elif self._failures >= self.failure_threshold:
                self._open(f"{self._failures} consecutive failures")

    def call(self, func: Callable, *args, **kwargs) -> Any:
        with self._lock:
            self._maybe_half_open()
            if self._state is CircuitState.OPEN:
                self._rejected_calls += 1
                remaining = self.timeout_seconds - (self._clock() - self._opened_at)
                raise CircuitBreakerError(self.name, max(0.0, remaining))

        try:
            result = func(*args, **kwargs)
        except self._counted:
            self._on_failure()
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._probe_successes = 0
            self._opened_at = None
            logger.info(f"[{self.name}] circuit manually reset")

    def get_stats(self) -> Dict:
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "consecutive_failures": self._failures,
                "total_failures": self._total_failures,
                "rejected_calls": self._rejected_calls,
                "opened_at": self._opened_at,
            }
