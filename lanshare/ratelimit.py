"""Fixed-window request counting keyed by caller identity.

Window state lives in a :class:`RateWindowStore` owned by whoever builds the
limiter. It is process-local: several worker processes each keep their own
counters, so the effective limit scales with the number of workers.
"""

import random
import threading
import time
from typing import Callable, Dict, Iterator, Optional, Tuple

DEFAULT_SWEEP_PROBABILITY = 0.1


class RateWindow:
    def __init__(self, count: int, window_start: float, reset_time: float) -> None:
        self.count = count
        self.window_start = window_start
        self.reset_time = reset_time

    def __repr__(self) -> str:
        return (
            f"RateWindow(count={self.count}, window_start={self.window_start}, "
            f"reset_time={self.reset_time})"
        )


class RateWindowStore:
    """Thread-safe table of rate windows keyed by caller id."""

    def __init__(self) -> None:
        self._windows: Dict[str, RateWindow] = {}
        self.lock = threading.RLock()

    def get(self, caller_id: str) -> Optional[RateWindow]:
        with self.lock:
            return self._windows.get(caller_id)

    def put(self, caller_id: str, window: RateWindow) -> None:
        with self.lock:
            self._windows[caller_id] = window

    def discard_expired(self, now: float) -> int:
        """Drop windows whose reset time has passed; return how many went."""

        with self.lock:
            expired = [
                caller_id
                for caller_id, window in self._windows.items()
                if window.reset_time <= now
            ]
            for caller_id in expired:
                del self._windows[caller_id]
            return len(expired)

    def clear(self) -> None:
        with self.lock:
            self._windows.clear()

    def items(self) -> Iterator[Tuple[str, RateWindow]]:
        with self.lock:
            return iter(list(self._windows.items()))

    def __contains__(self, caller_id: object) -> bool:
        with self.lock:
            return caller_id in self._windows

    def __len__(self) -> int:
        with self.lock:
            return len(self._windows)


class RateLimitResult:
    def __init__(self, allowed: bool, limit: int, remaining: int, reset_time: float) -> None:
        self.allowed = allowed
        self.limit = limit
        self.remaining = remaining
        self.reset_time = reset_time

    def retry_after(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(int(self.reset_time - now + 0.999), 0)

    def headers(self, now: Optional[float] = None) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_time)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after(now))
        return headers

    def __repr__(self) -> str:
        return (
            f"RateLimitResult(allowed={self.allowed}, limit={self.limit}, "
            f"remaining={self.remaining}, reset_time={self.reset_time})"
        )


class FixedWindowRateLimiter:
    def __init__(
        self,
        store: RateWindowStore,
        *,
        clock: Callable[[], float] = time.time,
        sweep_probability: float = DEFAULT_SWEEP_PROBABILITY,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.store = store
        self.sweep_probability = sweep_probability
        self._clock = clock
        self._rng = rng

    def allow(self, caller_id: str, max_requests: int, window_seconds: float) -> RateLimitResult:
        """Count one request from *caller_id* against its current window."""

        max_requests = max(int(max_requests), 1)
        now = self._clock()

        with self.store.lock:
            if self._rng() < self.sweep_probability:
                self.store.discard_expired(now)

            window = self.store.get(caller_id)
            if window is None or now >= window.reset_time:
                window = RateWindow(1, now, now + window_seconds)
                self.store.put(caller_id, window)
                return RateLimitResult(True, max_requests, max_requests - 1, window.reset_time)

            if window.count >= max_requests:
                return RateLimitResult(False, max_requests, 0, window.reset_time)

            window.count += 1
            return RateLimitResult(
                True, max_requests, max_requests - window.count, window.reset_time
            )
