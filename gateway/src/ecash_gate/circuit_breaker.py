# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Per-mint circuit breaker guarding the swap call."""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class CircuitBreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """CLOSED -> OPEN after `failure_threshold` failures inside `failure_window_s`,
    OPEN -> HALF_OPEN once `cooldown_s` has elapsed. HALF_OPEN admits a single
    trial call at a time; a failed trial reopens."""

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = 3,
        failure_window_s: float = 60.0,
        cooldown_s: float = 30.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.failure_window_s = failure_window_s
        self.cooldown_s = cooldown_s
        self._clock = clock or time.monotonic
        self._state = CircuitBreakerState.CLOSED
        self._failures: List[float] = []
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    def allow(self) -> bool:
        if self._state == CircuitBreakerState.OPEN:
            if self._clock() - self._opened_at < self.cooldown_s:
                return False
            self._state = CircuitBreakerState.HALF_OPEN
            logger.info(f"[BREAKER] {self.name} half-open, allowing trial call")
        if self._state == CircuitBreakerState.HALF_OPEN:
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
        return True

    def record_success(self) -> None:
        if self._state != CircuitBreakerState.CLOSED:
            logger.info(f"[BREAKER] {self.name} closed after successful call")
        self._failures = []
        self._trial_in_flight = False
        self._state = CircuitBreakerState.CLOSED

    def record_failure(self) -> None:
        now = self._clock()
        self._trial_in_flight = False
        if self._state == CircuitBreakerState.HALF_OPEN:
            self._open(now)
            return
        self._failures = [t for t in self._failures if now - t < self.failure_window_s]
        self._failures.append(now)
        if len(self._failures) >= self.failure_threshold:
            self._open(now)

    def _open(self, now: float) -> None:
        self._state = CircuitBreakerState.OPEN
        self._opened_at = now
        self._failures = []
        logger.warning(f"[BREAKER] {self.name} opened (cooldown {self.cooldown_s}s)")

    def get_state(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": len(self._failures),
            "failure_threshold": self.failure_threshold,
            "cooldown_s": self.cooldown_s,
            "trial_in_flight": self._trial_in_flight,
        }
