"""Circuit breaker for repair attempts.

Closed: repairs allowed. Tripped: repairs blocked until an operator
reset or, when enabled, a cooldown since the last attempt.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, asdict

from protocol import (
    DEFAULT_FAILURE_THRESHOLD, DEFAULT_MAX_RECURRENCES, DEFAULT_COOLDOWN,
    DEFAULT_MAX_ATTEMPTS_PER_WINDOW, DEFAULT_ATTEMPT_WINDOW,
)

log = logging.getLogger("heal.breaker")


@dataclass
class CircuitBreakerState:
    consecutive_failures: int = 0
    total_attempts: int = 0
    total_successes: int = 0
    total_failures: int = 0
    tripped: bool = False
    tripped_reason: str | None = None
    last_attempt_at: float | None = None
    tripped_at: float | None = None
    total_blocked: int = 0  # attempts refused while tripped

    def to_dict(self) -> dict:
        return asdict(self)


class CircuitBreaker:
    """Tracks repair outcomes and gates new attempts.

    Three trip conditions:
      - consecutive failures reaching `failure_threshold`
      - the same error signature coming back `max_recurrences` times after
        patches that applied cleanly
      - a crash loop: `max_attempts_per_window` attempts already started
        within `attempt_window` seconds, for at least two different errors
        (0 disables this check)

    Listeners are called as fn(reason, state_dict) once per trip.
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        max_recurrences: int = DEFAULT_MAX_RECURRENCES,
        cooldown: float = DEFAULT_COOLDOWN,
        auto_reset: bool = False,
        max_attempts_per_window: int = DEFAULT_MAX_ATTEMPTS_PER_WINDOW,
        attempt_window: float = DEFAULT_ATTEMPT_WINDOW,
        clock=time.time,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.failure_threshold = failure_threshold
        self.max_recurrences = max_recurrences
        self.cooldown = cooldown
        self.auto_reset = auto_reset
        self.max_attempts_per_window = max_attempts_per_window
        self.attempt_window = attempt_window
        self._clock = clock
        self._recent: deque[tuple[float, str]] = deque()  # (started_at, signature)
        self._state = CircuitBreakerState()
        self._recurrences: dict[str, int] = {}
        self._listeners = []

    @property
    def state(self) -> CircuitBreakerState:
        """Copy of the current state."""
        return CircuitBreakerState(**asdict(self._state))

    @property
    def tripped(self) -> bool:
        return self._state.tripped

    def add_listener(self, fn):
        self._listeners.append(fn)

    def remove_listener(self, fn):
        if fn in self._listeners:
            self._listeners.remove(fn)

    def allow_attempt(self) -> tuple[bool, str]:
        """Check whether a new attempt may start. Returns (allowed, reason)."""
        s = self._state
        if s.tripped and self.auto_reset and s.last_attempt_at is not None:
            if self._clock() - s.last_attempt_at >= self.cooldown:
                log.info("cooldown of %.0fs elapsed, resetting breaker", self.cooldown)
                self.reset()
        if not s.tripped:
            loop = self._crash_loop()
            if loop:
                self.trip(loop)
        if s.tripped:
            s.total_blocked += 1
            return False, s.tripped_reason or "circuit breaker tripped"
        return True, ""

    def _crash_loop(self) -> str | None:
        if self.max_attempts_per_window <= 0:
            return None
        cutoff = self._clock() - self.attempt_window
        while self._recent and self._recent[0][0] <= cutoff:
            self._recent.popleft()
        distinct = len({sig for _, sig in self._recent})
        if len(self._recent) >= self.max_attempts_per_window and distinct >= 2:
            return (
                f"crash loop: {len(self._recent)} repair attempts for {distinct} "
                f"different errors within {self.attempt_window:g}s"
            )
        return None

    def record_attempt(self, signature: str | None = None) -> int:
        """Count a started attempt. Returns the running total.

        Attempts recorded with a signature feed crash-loop detection.
        """
        s = self._state
        s.total_attempts += 1
        s.last_attempt_at = self._clock()
        if signature is not None and self.max_attempts_per_window > 0:
            self._recent.append((s.last_attempt_at, signature))
        return s.total_attempts

    def record_success(self) -> bool:
        s = self._state
        s.total_successes += 1
        s.consecutive_failures = 0
        return False

    def record_failure(self, reason: str = "") -> bool:
        """Count a failed attempt. Returns True if this failure tripped the breaker."""
        s = self._state
        s.total_failures += 1
        s.consecutive_failures += 1
        if s.consecutive_failures >= self.failure_threshold:
            cause = f"{s.consecutive_failures} consecutive repair failures"
            if reason:
                cause += f" (last: {reason})"
            return self.trip(cause)
        return False

    def record_recurrence(self, signature: str, message: str = "") -> bool:
        """Count a fault that came back after a successful patch.

        Returns True if this recurrence tripped the breaker.
        """
        count = self._recurrences.get(signature, 0) + 1
        self._recurrences[signature] = count
        log.info("error %s recurred after repair (%d/%d)", signature, count, self.max_recurrences)
        if count >= self.max_recurrences:
            cause = f"same error recurred {count} times despite successful patches"
            if message:
                cause += f": {message[:120]}"
            return self.trip(cause)
        return False

    def trip(self, reason: str) -> bool:
        """Move to tripped. No-op (returns False) if already tripped."""
        s = self._state
        if s.tripped:
            return False
        s.tripped = True
        s.tripped_reason = reason
        s.tripped_at = self._clock()
        log.warning(
            "circuit breaker tripped: %s (attempts=%d successes=%d failures=%d)",
            reason, s.total_attempts, s.total_successes, s.total_failures,
        )
        snapshot = s.to_dict()
        for fn in list(self._listeners):
            try:
                fn(reason, snapshot)
            except Exception:
                log.exception("breaker listener failed")
        return True

    def reset(self):
        """Back to closed. Totals are kept."""
        s = self._state
        s.tripped = False
        s.tripped_reason = None
        s.tripped_at = None
        s.consecutive_failures = 0
        self._recurrences.clear()
        self._recent.clear()

    def stats(self) -> dict:
        d = self._state.to_dict()
        d["failure_threshold"] = self.failure_threshold
        d["max_recurrences"] = self.max_recurrences
        d["auto_reset"] = self.auto_reset
        d["cooldown"] = self.cooldown
        d["max_attempts_per_window"] = self.max_attempts_per_window
        d["attempt_window"] = self.attempt_window
        d["recent_attempts"] = len(self._recent)
        return d
