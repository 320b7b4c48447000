"""
Consecutive-failure circuit breaker for the Bedrock clients.

After ``failure_threshold`` failures in a row the circuit opens and calls are refused
until ``reset_seconds`` have passed. Then one trial call is let through (half-open):
success closes the circuit, failure opens it for another cool-down.
"""

import threading
import time
from enum import Enum
from typing import Callable, Dict, Optional

from .logging_config import get_logger

logger = get_logger(__name__)


class CircuitState(str, Enum):
    CLOSED = 'CLOSED'
    OPEN = 'OPEN'
    HALF_OPEN = 'HALF_OPEN'


class CircuitBreaker:
    """Thread-safe breaker keyed to one downstream service."""

    def __init__(self,
                 name: str,
                 failure_threshold: int = 5,
                 reset_seconds: float = 30.0,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the breaker.

        Args:
            name: Service name used in log lines
            failure_threshold: Consecutive failures that open the circuit; 0 disables the breaker
            reset_seconds: Cool-down before a half-open trial call
            clock: Monotonic time source in seconds
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_seconds = reset_seconds
        self.clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def allow(self) -> bool:
        """Whether a call may go out now. Moves an expired open circuit to half-open."""
        if self.failure_threshold <= 0:
            return True

        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self.clock() - self._opened_at < self.reset_seconds:
                    return False
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
                logger.info(f'Circuit for {self.name} is half-open, allowing a trial call')

            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info(f'Circuit for {self.name} closed after a successful call')
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None
            self._trial_in_flight = False

    def record_failure(self) -> None:
        if self.failure_threshold <= 0:
            return

        with self._lock:
            self._failures += 1
            self._trial_in_flight = False
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                if self._state != CircuitState.OPEN:
                    logger.warning(f'Circuit for {self.name} opened after {self._failures} consecutive failures, '
                                   f'cooling down for {self.reset_seconds}s')
                self._state = CircuitState.OPEN
                self._opened_at = self.clock()

    def reset(self) -> None:
        self.record_success()

    def status(self) -> Dict[str, object]:
        with self._lock:
            return {'name': self.name, 'state': self._state.value, 'consecutive_failures': self._failures}
