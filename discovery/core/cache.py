"""
Simple in-memory cache for ranked feed pages served under backpressure.
"""

import time
from threading import Lock
from typing import Any, Dict, Optional, Tuple


class SimpleCache:
    """Thread-safe in-memory cache with TTL and a bounded number of entries"""

    def __init__(self, default_ttl: int = 60, max_entries: int = 10000):
        self.cache: Dict[str, Tuple[Any, float]] = {}
        self.lock = Lock()
        self.default_ttl = default_ttl
        self.max_entries = max_entries

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache if not expired"""
        with self.lock:
            if key in self.cache:
                value, expiry = self.cache[key]
                if time.monotonic() < expiry:
                    return value
                del self.cache[key]
            return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None):
        """Set value in cache with TTL (seconds)"""
        expiry = time.monotonic() + (ttl or self.default_ttl)
        with self.lock:
            if len(self.cache) >= self.max_entries and key not in self.cache:
                self._evict_locked()
            self.cache[key] = (value, expiry)

    def delete(self, key: str):
        with self.lock:
            self.cache.pop(key, None)

    def delete_prefix(self, prefix: str):
        """Drop every entry whose key starts with `prefix`"""
        with self.lock:
            for key in [k for k in self.cache if k.startswith(prefix)]:
                del self.cache[key]

    def clear(self):
        with self.lock:
            self.cache.clear()

    def cleanup_expired(self) -> int:
        """Remove all expired entries"""
        now = time.monotonic()
        with self.lock:
            expired_keys = [k for k, (_, expiry) in self.cache.items() if now >= expiry]
            for key in expired_keys:
                del self.cache[key]
        return len(expired_keys)

    def __len__(self) -> int:
        return len(self.cache)

    def _evict_locked(self):
        now = time.monotonic()
        expired = [k for k, (_, expiry) in self.cache.items() if now >= expiry]
        for key in expired:
            del self.cache[key]
        if len(self.cache) >= self.max_entries:
            # Oldest expiry first
            victim = min(self.cache, key=lambda k: self.cache[k][1])
            del self.cache[victim]
