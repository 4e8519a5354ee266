"""
Backend Health Monitor

Tracks a health record per completion backend and answers "who can take
traffic right now". Recording happens synchronously on every call outcome;
recovery is driven by a periodic decay tick.

Reads never mutate: `is_healthy` evaluates the record as it stands. Expired
cooldowns are reconciled only by `decay_tick`, which runs every 60s in the
background (or can be called directly). Every backend record has its own
lock so recording and the tick never lose updates.
"""

import asyncio
import logging
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from providers.base import Backend, BackendError, ErrorCode

logger = logging.getLogger("advisory-router.health")

MAX_SCORE = 100
UNHEALTHY_BELOW = 30
MAX_CONSECUTIVE_FAILURES = 5

SUCCESS_BONUS = 5
RATE_LIMIT_PENALTY = 30
RATE_LIMIT_COOLDOWN = 60
QUOTA_COOLDOWN = 300
AUTH_COOLDOWN = 600
GENERIC_PENALTY = 10
CONSECUTIVE_PENALTY = 20

COOLDOWN_RECOVERY_BONUS = 20
DECAY_BONUS = 2


class ErrorKind(str, Enum):
    RATE_LIMIT = "rate-limit"
    QUOTA_EXCEEDED = "quota-exceeded"
    AUTH_ERROR = "auth-error"
    GENERIC = "generic"


_QUOTA_MARKERS = ("insufficient_quota", "quota exceeded", "quota_exceeded", "billing", "model overloaded", "capacity")
_AUTH_MARKERS = ("invalid api key", "incorrect api key", "authentication", "unauthorized")
_RATE_MARKERS = ("rate limit", "too many requests", "rate_limit_exceeded")

_KIND_BY_CODE = {
    ErrorCode.QUOTA_EXCEEDED: ErrorKind.QUOTA_EXCEEDED,
    ErrorCode.AUTH_ERROR: ErrorKind.AUTH_ERROR,
    ErrorCode.RATE_LIMIT: ErrorKind.RATE_LIMIT,
}


def classify_error(error: BaseException) -> ErrorKind:
    """
    Bucket a failure into exactly one error kind.

    A BackendError already carries its code and is trusted as is. Anything
    else is judged by status code, then message. Quota and auth are checked
    before rate-limit: quota errors frequently arrive as HTTP 429 and would
    otherwise be mistaken for throttling.
    """
    if isinstance(error, BackendError):
        return _KIND_BY_CODE.get(error.code, ErrorKind.GENERIC)

    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    msg = str(error).lower()

    if any(m in msg for m in _QUOTA_MARKERS) or (status == 429 and "quota" in msg):
        return ErrorKind.QUOTA_EXCEEDED
    if status in (401, 403) or any(m in msg for m in _AUTH_MARKERS):
        return ErrorKind.AUTH_ERROR
    if status == 429 or any(m in msg for m in _RATE_MARKERS):
        return ErrorKind.RATE_LIMIT
    return ErrorKind.GENERIC


@dataclass
class BackendHealthRecord:
    backend: str
    success_count: int = 0
    error_count: int = 0
    consecutive_failures: int = 0
    last_error_at: Optional[float] = None
    last_success_at: Optional[float] = None
    last_error_kind: Optional[ErrorKind] = None
    score: int = MAX_SCORE
    cooldown_until: Optional[float] = None
    quota_exceeded: bool = False

    def is_healthy(self, now: float) -> bool:
        if self.score < UNHEALTHY_BELOW:
            return False
        if self.quota_exceeded:
            return False
        if self.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
            return False
        if self.cooldown_until is not None and now < self.cooldown_until:
            return False
        return True

    def to_dict(self, now: float) -> Dict:
        data = asdict(self)
        data["last_error_kind"] = self.last_error_kind.value if self.last_error_kind else None
        data["healthy"] = self.is_healthy(now)
        total = self.success_count + self.error_count
        data["success_rate"] = round(self.success_count / total, 4) if total else 1.0
        return data


def _clamp(score: int) -> int:
    return max(0, min(MAX_SCORE, score))


class HealthMonitor:
    def __init__(
        self,
        backends: Iterable[Backend] = tuple(Backend),
        clock: Callable[[], float] = time.time,
        decay_interval: float = 60.0,
        recovery_window: float = 300.0,
    ):
        self._clock = clock
        self.decay_interval = decay_interval
        self.recovery_window = recovery_window
        self._records: Dict[Backend, BackendHealthRecord] = {}
        self._locks: Dict[Backend, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None
        for backend in backends:
            self._ensure(Backend(backend))

    def _ensure(self, backend: Backend) -> Backend:
        backend = Backend(backend)
        if backend not in self._records:
            with self._registry_lock:
                if backend not in self._records:
                    self._locks[backend] = threading.Lock()
                    self._records[backend] = BackendHealthRecord(backend=backend.value)
        return backend

    # ---------- Recording ----------
    def record_success(self, backend: Backend):
        backend = self._ensure(backend)
        with self._locks[backend]:
            rec = self._records[backend]
            rec.success_count += 1
            rec.last_success_at = self._clock()
            rec.consecutive_failures = 0
            rec.score = _clamp(rec.score + SUCCESS_BONUS)
            rec.quota_exceeded = False
            rec.cooldown_until = None

    def record_failure(self, backend: Backend, error: BaseException) -> ErrorKind:
        backend = self._ensure(backend)
        kind = classify_error(error)
        with self._locks[backend]:
            rec = self._records[backend]
            now = self._clock()
            rec.error_count += 1
            rec.consecutive_failures += 1
            rec.last_error_at = now
            rec.last_error_kind = kind

            if kind is ErrorKind.RATE_LIMIT:
                rec.score -= RATE_LIMIT_PENALTY
                rec.cooldown_until = now + RATE_LIMIT_COOLDOWN
            elif kind is ErrorKind.QUOTA_EXCEEDED:
                rec.score = 0
                rec.quota_exceeded = True
                rec.cooldown_until = now + QUOTA_COOLDOWN
            elif kind is ErrorKind.AUTH_ERROR:
                rec.score = 0
                rec.cooldown_until = now + AUTH_COOLDOWN
            else:
                rec.score -= GENERIC_PENALTY

            if rec.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                rec.score -= CONSECUTIVE_PENALTY
            rec.score = _clamp(rec.score)
            score, failures = rec.score, rec.consecutive_failures

        logger.warning(f"Backend {backend.value} failure ({kind.value}): score={score} consecutive={failures}")
        return kind

    # ---------- Queries ----------
    def is_healthy(self, backend: Backend) -> bool:
        backend = self._ensure(backend)
        with self._locks[backend]:
            return self._records[backend].is_healthy(self._clock())

    def score(self, backend: Backend) -> int:
        backend = self._ensure(backend)
        with self._locks[backend]:
            return self._records[backend].score

    def snapshot(self, backend: Backend) -> BackendHealthRecord:
        """Copy of the record, safe to inspect without holding the lock."""
        backend = self._ensure(backend)
        with self._locks[backend]:
            return BackendHealthRecord(**asdict(self._records[backend]))

    def get_healthy_candidates(self, backends: Iterable[Backend]) -> List[Backend]:
        healthy = [Backend(b) for b in backends if self.is_healthy(b)]
        return sorted(healthy, key=self.score, reverse=True)

    def get_best_candidate(self, preferred: Backend, fallbacks: Iterable[Backend]) -> Optional[Backend]:
        if self.is_healthy(preferred):
            return Backend(preferred)
        candidates = self.get_healthy_candidates(fallbacks)
        if candidates:
            logger.info(f"Preferred backend {Backend(preferred).value} unhealthy, using {candidates[0].value}")
            return candidates[0]
        logger.error(f"No healthy backend among {Backend(preferred).value} and its fallbacks")
        return None

    def status(self) -> Dict[str, Dict]:
        now = self._clock()
        out = {}
        for backend in list(self._records):
            with self._locks[backend]:
                out[backend.value] = self._records[backend].to_dict(now)
        return out

    # ---------- Maintenance ----------
    def reset(self, backend: Backend):
        backend = self._ensure(backend)
        with self._locks[backend]:
            self._records[backend] = BackendHealthRecord(backend=backend.value)
        logger.info(f"Health record for {backend.value} reset")

    def decay_tick(self):
        """Reconcile expired cooldowns and drift idle backends back toward full health."""
        now = self._clock()
        for backend in list(self._records):
            with self._locks[backend]:
                rec = self._records[backend]
                if rec.cooldown_until is not None and now >= rec.cooldown_until:
                    rec.cooldown_until = None
                    rec.quota_exceeded = False
                    rec.score = _clamp(rec.score + COOLDOWN_RECOVERY_BONUS)
                    logger.info(f"Cooldown expired for {backend.value}, score now {rec.score}")

                quiet = rec.last_error_at is None or (now - rec.last_error_at) > self.recovery_window
                if quiet:
                    rec.score = _clamp(rec.score + DECAY_BONUS)
                    rec.consecutive_failures = max(0, rec.consecutive_failures - 1)

    async def _decay_loop(self):
        while True:
            await asyncio.sleep(self.decay_interval)
            self.decay_tick()

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._decay_loop())
            logger.info(f"Health decay task started (every {self.decay_interval}s)")

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
