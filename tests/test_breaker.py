import sys, os; sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from breaker import CircuitBreaker, CircuitBreakerState


class FakeClock:
    def __init__(self, t=1000.0):
        self.t = t

    def __call__(self):
        return self.t


def fail(breaker, n, reason="timeout"):
    results = []
    for _ in range(n):
        breaker.record_attempt()
        results.append(breaker.record_failure(reason))
    return results


class TestInitialState:
    def test_starts_closed_and_zeroed(self):
        b = CircuitBreaker()
        s = b.state
        assert s == CircuitBreakerState()
        assert not b.tripped
        assert b.allow_attempt() == (True, "")

    def test_threshold_must_be_positive(self):
        with pytest.raises(ValueError):
            CircuitBreaker(failure_threshold=0)

    def test_state_is_a_copy(self):
        b = CircuitBreaker()
        s = b.state
        s.total_attempts = 99
        assert b.state.total_attempts == 0


class TestFailureThreshold:
    def test_trips_exactly_once_at_threshold(self):
        b = CircuitBreaker(failure_threshold=3)
        trips = []
        b.add_listener(lambda reason, state: trips.append(reason))
        results = fail(b, 6)
        assert results == [False, False, True, False, False, False]
        assert len(trips) == 1
        assert b.tripped
        assert "3 consecutive repair failures" in b.state.tripped_reason
        assert "timeout" in b.state.tripped_reason

    def test_blocks_while_tripped(self):
        b = CircuitBreaker(failure_threshold=2)
        fail(b, 2)
        allowed, reason = b.allow_attempt()
        assert not allowed
        assert reason == b.state.tripped_reason
        assert b.state.total_blocked == 1

    def test_success_resets_consecutive(self):
        b = CircuitBreaker(failure_threshold=3)
        fail(b, 2)
        b.record_attempt()
        b.record_success()
        s = b.state
        assert s.consecutive_failures == 0
        assert s.total_failures == 2
        assert s.total_successes == 1
        assert s.total_attempts == 3
        assert not s.tripped

    def test_failures_after_success_count_from_zero(self):
        b = CircuitBreaker(failure_threshold=3)
        fail(b, 2)
        b.record_attempt()
        b.record_success()
        fail(b, 2)
        assert not b.tripped

    def test_listener_exception_is_contained(self):
        b = CircuitBreaker(failure_threshold=1)

        def bad(reason, state):
            raise RuntimeError("listener bug")

        b.add_listener(bad)
        assert fail(b, 1) == [True]
        assert b.tripped

    def test_removed_listener_not_called(self):
        b = CircuitBreaker(failure_threshold=1)
        calls = []
        fn = lambda reason, state: calls.append(reason)
        b.add_listener(fn)
        b.remove_listener(fn)
        fail(b, 1)
        assert calls == []


class TestReset:
    def test_reset_clears_trip_keeps_totals(self):
        b = CircuitBreaker(failure_threshold=2)
        fail(b, 2)
        b.record_attempt()
        b.reset()
        s = b.state
        assert not s.tripped
        assert s.tripped_reason is None
        assert s.consecutive_failures == 0
        assert s.total_attempts == 3
        assert s.total_failures == 2
        assert b.allow_attempt() == (True, "")

    def test_trips_again_after_reset(self):
        b = CircuitBreaker(failure_threshold=2)
        trips = []
        b.add_listener(lambda reason, state: trips.append(reason))
        fail(b, 2)
        b.reset()
        fail(b, 2)
        assert len(trips) == 2


class TestAutoReset:
    def test_no_auto_reset_by_default(self):
        clock = FakeClock()
        b = CircuitBreaker(failure_threshold=1, cooldown=10, clock=clock)
        fail(b, 1)
        clock.t += 3600
        assert b.allow_attempt()[0] is False

    def test_auto_reset_after_cooldown(self):
        clock = FakeClock()
        b = CircuitBreaker(failure_threshold=1, cooldown=10, auto_reset=True, clock=clock)
        fail(b, 1)
        clock.t += 5
        assert b.allow_attempt()[0] is False
        clock.t += 5
        assert b.allow_attempt() == (True, "")
        assert b.state.total_failures == 1

    def test_cooldown_measured_from_last_attempt(self):
        clock = FakeClock()
        b = CircuitBreaker(failure_threshold=1, cooldown=10, auto_reset=True, clock=clock)
        b.record_attempt()
        clock.t += 8
        b.record_failure("slow")
        clock.t += 3
        assert b.allow_attempt()[0] is True


class TestRecurrence:
    def test_trips_after_max_recurrences(self):
        b = CircuitBreaker(max_recurrences=2)
        assert b.record_recurrence("abc", "KeyError: 'x'") is False
        assert b.record_recurrence("abc", "KeyError: 'x'") is True
        assert b.tripped
        assert "recurred 2 times" in b.state.tripped_reason
        assert "KeyError" in b.state.tripped_reason

    def test_recurrences_counted_per_signature(self):
        b = CircuitBreaker(max_recurrences=2)
        b.record_recurrence("abc")
        b.record_recurrence("def")
        assert not b.tripped

    def test_reset_clears_recurrences(self):
        b = CircuitBreaker(max_recurrences=2)
        b.record_recurrence("abc")
        b.reset()
        assert b.record_recurrence("abc") is False


class TestCrashLoop:
    def test_trips_on_attempts_for_different_errors(self):
        clock = FakeClock()
        b = CircuitBreaker(max_attempts_per_window=3, attempt_window=60, clock=clock)
        trips = []
        b.add_listener(lambda reason, state: trips.append(reason))
        for sig in ("a", "b", "a"):
            assert b.allow_attempt()[0] is True
            b.record_attempt(sig)
            clock.t += 5
        allowed, reason = b.allow_attempt()
        assert not allowed
        assert reason.startswith("crash loop: 3 repair attempts for 2 different errors")
        assert b.tripped
        assert trips == [reason]

    def test_same_error_repeated_is_not_a_loop(self):
        b = CircuitBreaker(max_attempts_per_window=3, clock=FakeClock())
        for _ in range(5):
            b.record_attempt("a")
        assert b.allow_attempt() == (True, "")

    def test_old_attempts_fall_out_of_window(self):
        clock = FakeClock()
        b = CircuitBreaker(max_attempts_per_window=3, attempt_window=60, clock=clock)
        b.record_attempt("a")
        b.record_attempt("b")
        clock.t += 60
        b.record_attempt("c")
        assert b.allow_attempt() == (True, "")
        assert b.stats()["recent_attempts"] == 1

    def test_zero_disables(self):
        b = CircuitBreaker(max_attempts_per_window=0, clock=FakeClock())
        for sig in "abcdef":
            b.record_attempt(sig)
        assert b.allow_attempt() == (True, "")
        assert b.stats()["recent_attempts"] == 0

    def test_unsigned_attempts_ignored(self):
        b = CircuitBreaker(max_attempts_per_window=2, clock=FakeClock())
        for _ in range(4):
            b.record_attempt()
        assert b.allow_attempt() == (True, "")

    def test_reset_clears_history(self):
        b = CircuitBreaker(max_attempts_per_window=2, clock=FakeClock())
        b.record_attempt("a")
        b.record_attempt("b")
        assert b.allow_attempt()[0] is False
        b.reset()
        assert b.allow_attempt() == (True, "")

    def test_auto_reset_clears_history(self):
        clock = FakeClock()
        b = CircuitBreaker(max_attempts_per_window=2, attempt_window=600, cooldown=10, auto_reset=True, clock=clock)
        b.record_attempt("a")
        b.record_attempt("b")
        assert b.allow_attempt()[0] is False
        clock.t += 10
        assert b.allow_attempt() == (True, "")


class TestStats:
    def test_stats_include_config(self):
        b = CircuitBreaker(failure_threshold=4, cooldown=5, auto_reset=True)
        s = b.stats()
        assert s["failure_threshold"] == 4
        assert s["auto_reset"] is True
        assert s["cooldown"] == 5
        assert s["tripped"] is False
        assert s["total_attempts"] == 0
