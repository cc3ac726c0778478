"""
Account-scoped TTL cache.

Holds per-account objects that are expensive to build (mailbox clients
with their discovery documents and refreshed credentials). One instance is
created at startup and handed to the components that need it.
"""
import logging
import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)


class AccountCache:
    """Thread-safe key/value cache with a per-entry time to live."""

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: Hashable, value: Any, ttl_seconds: Optional[float] = None):
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)

    def invalidate(self, key: Hashable) -> bool:
        """Drop one entry. Returns True if it was present."""
        with self._lock:
            removed = self._entries.pop(key, None) is not None
        if removed:
            logger.debug(f"Invalidated cache entry for {key}")
        return removed

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for expires_at, _ in self._entries.values() if expires_at > now)
