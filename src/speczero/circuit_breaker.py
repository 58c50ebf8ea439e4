"""LLM endpoint protection: per-model circuit breakers and wall-clock timeouts.

Every analysis step in a run talks to the same model. When that model
starts failing, the breaker for it opens and the remaining steps fail fast
with ``CircuitBreakerOpen`` instead of each burning its own timeout.

    closed --(threshold consecutive failures)--> open
    open --(cooldown elapsed, next check)--> half_open
    half_open --(probe succeeds)--> closed
    half_open --(probe fails)--> open

``call_with_timeout`` bounds a single call (used by the executor around
each step); ``run_with_timeout`` adds breaker bookkeeping for model calls.
"""

import contextvars
import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict

from .exceptions import ErrorCode, SpecZeroError

logger = logging.getLogger("speczero.circuit_breaker")

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_COOLDOWN_SECONDS = 60.0


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(SpecZeroError):
    """A model endpoint is tripped; the call was not attempted."""

    def __init__(self, endpoint: str, retry_after: float):
        super().__init__(
            f"Model endpoint '{endpoint}' is unavailable after repeated failures; "
            f"retry in {retry_after:.0f}s",
            ErrorCode.CIRCUIT_OPEN,
            details={"endpoint": endpoint, "retry_after": round(retry_after, 3)},
        )
        self.endpoint = endpoint
        self.retry_after = retry_after


class CircuitBreaker:
    """Consecutive-failure breaker for one model endpoint.

    Safe to share between the worker threads of a layer.
    """

    def __init__(
        self,
        endpoint: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
    ) -> None:
        self.endpoint = endpoint
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._consecutive_failures

    def _move(self, new_state: CircuitState, reason: str) -> None:
        # caller holds the lock
        if new_state is self._state:
            return
        log = logger.warning if new_state is CircuitState.OPEN else logger.info
        log("Model %s circuit %s -> %s (%s)", self.endpoint, self._state.value, new_state.value, reason)
        self._state = new_state
        if new_state is CircuitState.OPEN:
            self._opened_at = time.monotonic()

    def check(self) -> None:
        """Let the call through, or raise CircuitBreakerOpen.

        An open circuit whose cooldown has elapsed moves to half-open and
        admits the caller as its probe.
        """
        with self._lock:
            if self._state is not CircuitState.OPEN:
                return
            remaining = self.cooldown_seconds - (time.monotonic() - self._opened_at)
            if remaining > 0:
                raise CircuitBreakerOpen(self.endpoint, remaining)
            self._move(CircuitState.HALF_OPEN, "cooldown elapsed")

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._move(CircuitState.CLOSED, "call succeeded")

    def record_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            if self._state is CircuitState.HALF_OPEN:
                self._move(CircuitState.OPEN, "probe failed")
            elif self._consecutive_failures >= self.failure_threshold:
                self._move(CircuitState.OPEN, f"{self._consecutive_failures} consecutive failures")

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "endpoint": self.endpoint,
                "state": self._state.value,
                "consecutive_failures": self._consecutive_failures,
            }


# Breakers are keyed by model string and live for the whole process.
_breakers: Dict[str, CircuitBreaker] = {}
_defaults = {"failure_threshold": DEFAULT_FAILURE_THRESHOLD, "cooldown_seconds": DEFAULT_COOLDOWN_SECONDS}
_registry_lock = threading.Lock()


def configure_breakers(failure_threshold: int, cooldown_seconds: float) -> None:
    """Set the thresholds used for breakers created from now on."""
    with _registry_lock:
        _defaults["failure_threshold"] = failure_threshold
        _defaults["cooldown_seconds"] = cooldown_seconds


def get_breaker(endpoint: str) -> CircuitBreaker:
    with _registry_lock:
        breaker = _breakers.get(endpoint)
        if breaker is None:
            breaker = _breakers[endpoint] = CircuitBreaker(endpoint, **_defaults)
        return breaker


def reset_all() -> None:
    """Forget every breaker and restore default thresholds."""
    with _registry_lock:
        _breakers.clear()
        _defaults["failure_threshold"] = DEFAULT_FAILURE_THRESHOLD
        _defaults["cooldown_seconds"] = DEFAULT_COOLDOWN_SECONDS


def call_with_timeout(fn: Callable[[], Any], timeout: float, label: str = "call") -> Any:
    """Return ``fn()``, or raise TimeoutError once *timeout* seconds pass.

    *fn* runs on a daemon thread carrying a copy of the caller's context
    variables. On timeout that thread is left behind; it cannot be
    interrupted, and being a daemon it never blocks interpreter exit.
    """
    outcome: Dict[str, Any] = {}
    ctx = contextvars.copy_context()

    def target() -> None:
        try:
            outcome["value"] = ctx.run(fn)
        except BaseException as e:  # re-raised on the calling thread
            outcome["error"] = e

    worker = threading.Thread(target=target, name=f"speczero-timeout-{label}", daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        logger.error("%s did not finish within %ss", label, timeout)
        raise TimeoutError(f"{label} exceeded {timeout}s timeout")
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("value")


def run_with_timeout(fn: Callable[[], Any], timeout: float, label: str) -> Any:
    """``call_with_timeout`` guarded by the breaker for *label*.

    Raises:
        CircuitBreakerOpen: the breaker for *label* is open; *fn* is not called.
        TimeoutError: *fn* ran longer than *timeout* seconds.
    """
    breaker = get_breaker(label)
    breaker.check()
    try:
        result = call_with_timeout(fn, timeout, label)
    except Exception:
        breaker.record_failure()
        raise
    breaker.record_success()
    return result


def breaker_states() -> Dict[str, Dict[str, Any]]:
    """State of every known breaker, for run summaries and diagnostics."""
    with _registry_lock:
        breakers = list(_breakers.values())
    return {b.endpoint: b.snapshot() for b in breakers}
