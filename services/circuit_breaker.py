"""
Circuit breakers for outbound calls.

A breaker wraps an async call target, enforces a hard timeout and stops
calling the target once its error rate over a rolling window crosses the
threshold. After `reset_timeout` one probe call is let through (half-open);
its outcome closes or re-opens the circuit.
"""

import asyncio
import logging
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple

from providers.base import Backend, BackendError, ErrorCode

logger = logging.getLogger("advisory-router.breaker")


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised instead of calling the target while the circuit is open."""

    def __init__(self, name: str):
        super().__init__(f"{name}: target unavailable (circuit open)")
        self.name = name


class CallTimeoutError(Exception):
    def __init__(self, name: str, timeout: float):
        super().__init__(f"{name}: call timed out after {timeout}s")
        self.name = name
        self.timeout = timeout


def counts_against_backend(exc: BaseException) -> bool:
    """Malformed requests are the caller's fault, not the backend's."""
    return not (isinstance(exc, BackendError) and exc.code is ErrorCode.INVALID_REQUEST)


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        timeout: float = 30.0,
        error_threshold_pct: float = 50.0,
        reset_timeout: float = 30.0,
        window: float = 10.0,
        volume_threshold: int = 3,
        is_failure: Optional[Callable[[BaseException], bool]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.timeout = timeout
        self.error_threshold_pct = error_threshold_pct
        self.reset_timeout = reset_timeout
        self.window = window
        self.volume_threshold = volume_threshold
        self._is_failure = is_failure
        self._clock = clock

        self._state = BreakerState.CLOSED
        self._outcomes: Deque[Tuple[float, bool]] = deque()
        self._opened_at: Optional[float] = None
        self._reset_deadline: Optional[float] = None
        self._probe_in_flight = False

    @property
    def state(self) -> BreakerState:
        self._maybe_half_open()
        return self._state

    def _maybe_half_open(self):
        if self._state is BreakerState.OPEN and self._clock() >= self._reset_deadline:
            self._state = BreakerState.HALF_OPEN
            logger.info(f"Breaker {self.name} half-open, allowing one probe")

    def _prune(self, now: float):
        while self._outcomes and now - self._outcomes[0][0] > self.window:
            self._outcomes.popleft()

    def _open(self):
        now = self._clock()
        self._state = BreakerState.OPEN
        self._opened_at = now
        self._reset_deadline = now + self.reset_timeout
        self._outcomes.clear()
        logger.warning(f"Breaker {self.name} OPEN for {self.reset_timeout}s")

    def _close(self):
        self._state = BreakerState.CLOSED
        self._outcomes.clear()
        self._opened_at = None
        self._reset_deadline = None
        logger.info(f"Breaker {self.name} closed")

    def _record(self, success: bool, probe: bool):
        if probe:
            if success:
                self._close()
            else:
                self._open()
            return
        if self._state is not BreakerState.CLOSED:
            return

        now = self._clock()
        self._outcomes.append((now, success))
        self._prune(now)
        if success:
            return
        total = len(self._outcomes)
        failures = sum(1 for _, ok in self._outcomes if not ok)
        if total >= self.volume_threshold and failures * 100.0 / total > self.error_threshold_pct:
            self._open()

    async def call(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run `fn()` through the breaker."""
        self._maybe_half_open()
        if self._state is BreakerState.OPEN:
            raise CircuitOpenError(self.name)

        probe = False
        if self._state is BreakerState.HALF_OPEN:
            if self._probe_in_flight:
                raise CircuitOpenError(self.name)
            self._probe_in_flight = True
            probe = True

        # None means "not attributable": cancelled, or filtered out by is_failure.
        outcome: Optional[bool] = None
        try:
            result = await asyncio.wait_for(fn(), timeout=self.timeout)
            outcome = True
            return result
        except asyncio.TimeoutError as e:
            outcome = False
            raise CallTimeoutError(self.name, self.timeout) from e
        except Exception as e:
            if self._is_failure is None or self._is_failure(e):
                outcome = False
            raise
        finally:
            if probe:
                self._probe_in_flight = False
            if outcome is not None:
                self._record(outcome, probe)

    def reset(self):
        self._close()

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        self._prune(now)
        total = len(self._outcomes)
        failures = sum(1 for _, ok in self._outcomes if not ok)
        return {
            "name": self.name,
            "state": self.state.value,
            "window_calls": total,
            "window_failures": failures,
            "error_pct": round(failures * 100.0 / total, 2) if total else 0.0,
            "opened_at": self._opened_at,
            "reset_deadline": self._reset_deadline,
        }


# Tuning per call-target class. AI backends get a long timeout and a short
# reset window since model latency is high and outages are usually transient.
DEFAULT_PROFILES = {
    "ai_backend": {"timeout_sec": 45, "error_threshold_pct": 40, "reset_timeout_sec": 60},
    "database": {"timeout_sec": 10, "error_threshold_pct": 60, "reset_timeout_sec": 20},
    "external_api": {"timeout_sec": 15, "error_threshold_pct": 50, "reset_timeout_sec": 30},
}


class BreakerRegistry:
    """One breaker per (target class, target name)."""

    def __init__(self, profiles: Optional[Dict[str, Dict]] = None, clock: Callable[[], float] = time.monotonic):
        self._profiles = {k: dict(v) for k, v in DEFAULT_PROFILES.items()}
        for target_class, overrides in (profiles or {}).items():
            self._profiles.setdefault(target_class, {}).update(overrides or {})
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, target_class: str, name: str) -> CircuitBreaker:
        key = f"{target_class}:{name}"
        if key not in self._breakers:
            if target_class not in self._profiles:
                raise ValueError(f"Unknown breaker target class: {target_class}")
            p = self._profiles[target_class]
            self._breakers[key] = CircuitBreaker(
                key,
                timeout=float(p.get("timeout_sec", 30)),
                error_threshold_pct=float(p.get("error_threshold_pct", 50)),
                reset_timeout=float(p.get("reset_timeout_sec", 30)),
                window=float(p.get("window_sec", 10)),
                volume_threshold=int(p.get("volume_threshold", 3)),
                is_failure=counts_against_backend if target_class == "ai_backend" else None,
                clock=self._clock,
            )
        return self._breakers[key]

    def for_backend(self, backend: Backend) -> CircuitBreaker:
        return self.get("ai_backend", Backend(backend).value)

    def stats(self) -> Dict[str, Dict]:
        return {key: b.stats() for key, b in self._breakers.items()}
