import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from urllib3 import HTTPHeaderDict


@dataclass(frozen=True)
class CacheEntry:
    """A captured upstream response."""
    status_code: int
    headers: Tuple[Tuple[str, str], ...]
    body: bytes
    created_at: float
    expires_at: float

    def header_dict(self) -> HTTPHeaderDict:
        """Fresh, mutable copy of the stored headers."""
        headers = HTTPHeaderDict()
        for name, value in self.headers:
            headers.add(name, value)
        return headers


class ResponseCache:
    """
    Thread-safe in-memory cache of upstream responses keyed by target URL.

    Entries expire a fixed number of seconds after they are recorded. Keys are
    used verbatim: no URL normalization takes place.
    """

    def __init__(self, ttl: float = 30, max_entries: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the cache.

        Args:
            ttl: Seconds an entry stays visible after it is recorded
            max_entries: Optional bound; the oldest entry is evicted on overflow
            clock: Time source, monotonic seconds
        """
        if ttl <= 0:
            raise ValueError("Cache TTL must be positive")
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._ttl = ttl
        self._max_entries = max_entries
        self._clock = clock
        self._entries: 'OrderedDict[str, CacheEntry]' = OrderedDict()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def ttl(self) -> float:
        return self._ttl

    @property
    def max_entries(self) -> Optional[int]:
        return self._max_entries

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for key, or None when missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                return None
            return entry

    def set(self, key: str, status_code: int, headers: HTTPHeaderDict, body: bytes,
            recorded_at: Optional[float] = None) -> Optional[CacheEntry]:
        """
        Store a response under key, replacing any previous entry.

        Returns:
            The stored entry, or None once the cache is closed
        """
        created_at = self._clock() if recorded_at is None else recorded_at
        entry = CacheEntry(
            status_code=status_code,
            headers=tuple(headers.iteritems()),
            body=bytes(body),
            created_at=created_at,
            expires_at=created_at + self._ttl
        )
        with self._lock:
            if self._closed:
                return None
            self._entries.pop(key, None)
            self._entries[key] = entry
            if self._max_entries is not None:
                while len(self._entries) > self._max_entries:
                    self._entries.popitem(last=False)
        return entry

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def close(self) -> None:
        """Drop all entries; the cache stays empty afterwards."""
        with self._lock:
            self._closed = True
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None
