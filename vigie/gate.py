"""Spacing and circuit breaking for registry calls.

A single ``RateGate`` is shared by every thread that talks to the registry.
Grants are handed out one at a time under a lock, so the sequence of grant
times is strictly increasing and spaced by at least the requested spacing.
The breaker only counts rate-limit failures (HTTP 429); other registry errors
are the caller's business.
"""

from dataclasses import dataclass
from logging import getLogger
from threading import Lock
from time import monotonic, sleep
from typing import Callable, Optional

from .config import (
    DEFAULT_RATE_LIMIT_THRESHOLD,
    DEFAULT_RATE_LIMIT_WINDOW_SECONDS,
    DEFAULT_REGISTRY_SPACING_MS,
)

LOG = getLogger(__name__)


@dataclass(frozen=True)
class BreakerState:
    consecutive_failures: int = 0
    last_failure_at: Optional[float] = None


class RateGate:
    def __init__(
        self,
        default_spacing_ms: int = DEFAULT_REGISTRY_SPACING_MS,
        threshold: int = DEFAULT_RATE_LIMIT_THRESHOLD,
        window_seconds: float = DEFAULT_RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], float] = monotonic,
        sleeper: Callable[[float], None] = sleep,
    ):
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.default_spacing_ms = default_spacing_ms
        self.threshold = threshold
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleeper
        self._grant_lock = Lock()
        self._state_lock = Lock()
        self._last_grant: Optional[float] = None
        self._state = BreakerState()

    def acquire(self, min_spacing_ms: Optional[int] = None) -> float:
        spacing_ms = self.default_spacing_ms if min_spacing_ms is None else min_spacing_ms
        if spacing_ms < 0:
            raise ValueError("spacing must not be negative")
        spacing = spacing_ms / 1000.0
        with self._grant_lock:
            if self._last_grant is not None:
                remaining = self._last_grant + spacing - self._clock()
                while remaining > 0:
                    self._sleep(remaining)
                    remaining = self._last_grant + spacing - self._clock()
            granted = self._clock()
            self._last_grant = granted
            return granted

    def record_failure(self, is_rate_limit_error: bool) -> bool:
        """Count a failure; returns True when the breaker is open afterwards."""
        if not is_rate_limit_error:
            return self.is_open()
        with self._state_lock:
            now = self._clock()
            current = self._current(now)
            self._state = BreakerState(
                consecutive_failures=current.consecutive_failures + 1,
                last_failure_at=now,
            )
            opened = self._state.consecutive_failures >= self.threshold
        if opened:
            LOG.warning(
                "Registry breaker open after %s consecutive rate-limit errors",
                self._state.consecutive_failures,
            )
        return opened

    def record_success(self) -> None:
        with self._state_lock:
            if self._state.consecutive_failures:
                LOG.debug("Registry call succeeded; resetting rate-limit counter")
            self._state = BreakerState(last_failure_at=self._state.last_failure_at)

    def is_open(self) -> bool:
        state = self._current(self._clock())
        return state.consecutive_failures >= self.threshold

    def failure_count(self) -> int:
        return self._current(self._clock()).consecutive_failures

    def reset(self) -> None:
        with self._state_lock:
            self._state = BreakerState()
        with self._grant_lock:
            self._last_grant = None

    def _current(self, now: float) -> BreakerState:
        state = self._state
        if state.last_failure_at is not None and now - state.last_failure_at > self.window_seconds:
            return BreakerState()
        return state
