"""Tests for the endpoint circuit breaker and the timeout helpers.

State transitions covered:
  CLOSED -> OPEN after the failure threshold
  OPEN -> HALF_OPEN once the cooldown expires
  HALF_OPEN -> CLOSED on a successful probe, back to OPEN on a failed one
"""

import threading
import time

import pytest

from speczero.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOpen,
    CircuitState,
    breaker_states,
    call_with_timeout,
    configure_breakers,
    get_breaker,
    reset_all,
    run_with_timeout,
)
from speczero.exceptions import ErrorCode
from speczero.logging_config import run_id_var


@pytest.fixture
def release():
    """Event that unblocks abandoned helper threads at teardown."""
    event = threading.Event()
    yield event
    event.set()


class TestCircuitBreakerStates:
    def test_starts_closed(self):
        assert CircuitBreaker("gpt").state == CircuitState.CLOSED

    def test_opens_at_threshold(self):
        cb = CircuitBreaker("gpt", failure_threshold=2)
        cb.record_failure()
        assert cb.state == CircuitState.CLOSED
        cb.record_failure()
        assert cb.state == CircuitState.OPEN

    def test_open_blocks_with_error_code(self):
        cb = CircuitBreaker("gpt", failure_threshold=1, cooldown_seconds=60)
        cb.record_failure()
        with pytest.raises(CircuitBreakerOpen) as exc_info:
            cb.check()
        assert exc_info.value.error_code == ErrorCode.CIRCUIT_OPEN
        assert exc_info.value.details["endpoint"] == "gpt"
        assert exc_info.value.retry_after > 0

    def test_success_resets_failure_count(self):
        cb = CircuitBreaker("gpt", failure_threshold=2)
        cb.record_failure()
        cb.record_success()
        cb.record_failure()
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 1

    def test_half_open_probe(self):
        cb = CircuitBreaker("gpt", failure_threshold=1, cooldown_seconds=0.01)
        cb.record_failure()
        time.sleep(0.02)
        cb.check()
        assert cb.state == CircuitState.HALF_OPEN
        cb.record_success()
        assert cb.state == CircuitState.CLOSED

    def test_failed_probe_reopens(self):
        cb = CircuitBreaker("gpt", failure_threshold=1, cooldown_seconds=0.01)
        cb.record_failure()
        time.sleep(0.02)
        cb.check()
        cb.record_failure()
        assert cb.state == CircuitState.OPEN


class TestRegistry:
    def test_same_endpoint_same_breaker(self):
        assert get_breaker("model-a") is get_breaker("model-a")
        assert get_breaker("model-a") is not get_breaker("model-b")

    def test_reset_all(self):
        get_breaker("model-a").record_failure()
        reset_all()
        assert get_breaker("model-a").failure_count == 0


class TestCallWithTimeout:
    def test_returns_result(self):
        assert call_with_timeout(lambda: "ok", timeout=5) == "ok"

    def test_timeout_raises_builtin_timeout_error(self, release):
        with pytest.raises(TimeoutError, match="step exceeded 0.05s"):
            call_with_timeout(release.wait, timeout=0.05, label="step")

    def test_propagates_context_vars(self):
        token = run_id_var.set("run-42")
        try:
            assert call_with_timeout(run_id_var.get, timeout=5) == "run-42"
        finally:
            run_id_var.reset(token)


class TestRunWithTimeout:
    def test_success_closes_breaker(self):
        assert run_with_timeout(lambda: 42, timeout=5, label="m") == 42
        assert get_breaker("m").failure_count == 0

    def test_timeout_records_failure(self, release):
        with pytest.raises(TimeoutError):
            run_with_timeout(release.wait, timeout=0.05, label="slow")
        assert get_breaker("slow").failure_count == 1

    def test_exception_propagates_and_records_failure(self):
        def failing():
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            run_with_timeout(failing, timeout=5, label="fail")
        assert get_breaker("fail").failure_count == 1

    def test_open_circuit_fails_fast(self):
        breaker = get_breaker("blocked")
        for _ in range(3):
            breaker.record_failure()
        called = []
        with pytest.raises(CircuitBreakerOpen):
            run_with_timeout(lambda: called.append(1), timeout=5, label="blocked")
        assert called == []


class TestConfiguration:
    def test_configured_thresholds_apply_to_new_breakers(self):
        configure_breakers(failure_threshold=1, cooldown_seconds=5)
        breaker = get_breaker("fresh")
        assert (breaker.failure_threshold, breaker.cooldown_seconds) == (1, 5)
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

    def test_reset_restores_defaults(self):
        configure_breakers(failure_threshold=1, cooldown_seconds=5)
        reset_all()
        assert get_breaker("fresh").failure_threshold == 3

    def test_breaker_states(self):
        get_breaker("a").record_failure()
        assert breaker_states() == {
            "a": {"endpoint": "a", "state": "closed", "consecutive_failures": 1},
        }
