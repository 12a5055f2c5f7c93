import threading
from collections import deque
from typing import Callable, Deque, Dict, Optional

from .errors import RateLimitExceeded
from .models import RateLimit
from .utils import wall_clock


class RateLimiter:
    """
    Sliding-window log limiter keyed by queue name.

    Each queue keeps the start times of its last ``max`` jobs; a start is
    allowed only when fewer than ``max`` starts fall inside the trailing
    ``duration_ms`` window. Queues without a configured limit are never throttled.
    """

    def __init__(self, limits: Optional[Dict[str, RateLimit]] = None, clock: Callable[[], float] = wall_clock):
        self._limits: Dict[str, RateLimit] = dict(limits or {})
        self._windows: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def configure(self, queue_name: str, limit: Optional[RateLimit]):
        with self._lock:
            if limit is None:
                self._limits.pop(queue_name, None)
                self._windows.pop(queue_name, None)
            else:
                if limit.max < 1 or limit.duration_ms <= 0:
                    raise ValueError("rate limit needs max >= 1 and duration_ms > 0")
                self._limits[queue_name] = limit

    def limit_for(self, queue_name: str) -> Optional[RateLimit]:
        return self._limits.get(queue_name)

    def _prune(self, window: Deque[float], now: float, duration_s: float):
        while window and window[0] <= now - duration_s:
            window.popleft()

    def try_acquire(self, queue_name: str) -> bool:
        limit = self._limits.get(queue_name)
        if limit is None:
            return True
        with self._lock:
            now = self._clock()
            window = self._windows.setdefault(queue_name, deque())
            self._prune(window, now, limit.duration_ms / 1000.0)
            if len(window) >= limit.max:
                return False
            window.append(now)
            return True

    def acquire_or_raise(self, queue_name: str):
        if not self.try_acquire(queue_name):
            raise RateLimitExceeded(queue_name, self.time_until_available(queue_name))

    def release(self, queue_name: str):
        """Give back the most recent start, e.g. when the acquire found no job to run."""
        if queue_name not in self._limits:
            return
        with self._lock:
            window = self._windows.get(queue_name)
            if window:
                window.pop()

    def time_until_available(self, queue_name: str) -> float:
        """Seconds until the oldest start in the window ages out; 0 when a start is allowed now."""
        limit = self._limits.get(queue_name)
        if limit is None:
            return 0.0
        with self._lock:
            now = self._clock()
            duration_s = limit.duration_ms / 1000.0
            window = self._windows.get(queue_name)
            if not window:
                return 0.0
            self._prune(window, now, duration_s)
            if len(window) < limit.max:
                return 0.0
            return max(0.0, window[0] + duration_s - now)
