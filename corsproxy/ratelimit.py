import threading
import time
from typing import Callable, Dict, Tuple


class RateLimiter:
    """
    Fixed-window request counter per client IP and route.

    The first request from a client opens a window of ``window_ms``; at most
    ``max_requests`` requests are admitted until that window ends.
    """

    def __init__(self, window_ms: int = 60000, max_requests: int = 100,
                 clock: Callable[[], float] = time.monotonic):
        if window_ms <= 0:
            raise ValueError("Rate limit window must be positive")
        if max_requests < 1:
            raise ValueError("Rate limit max must be at least 1")
        self._window = window_ms / 1000.0
        self._max_requests = max_requests
        self._clock = clock
        # (ip, route) -> (window start, hits)
        self._windows: Dict[Tuple[str, str], Tuple[float, int]] = {}
        self._lock = threading.Lock()

    @property
    def window_ms(self) -> int:
        return int(self._window * 1000)

    @property
    def max_requests(self) -> int:
        return self._max_requests

    def allow(self, ip: str, route: str = '/') -> bool:
        """Count a request and tell whether it is admitted."""
        key = (ip, route)
        now = self._clock()
        with self._lock:
            started, hits = self._windows.get(key, (now, 0))
            if now - started >= self._window:
                started, hits = now, 0
            hits += 1
            self._windows[key] = (started, hits)
            return hits <= self._max_requests

    def purge_expired(self) -> int:
        """Forget clients whose window has ended."""
        now = self._clock()
        with self._lock:
            expired = [key for key, (started, _) in self._windows.items()
                       if now - started >= self._window]
            for key in expired:
                del self._windows[key]
        return len(expired)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
