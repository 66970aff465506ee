from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple


class MemoryCache:
    """Process-local ephemeral store with per-key expiry.

    Mirrors the RedisCache surface so services can run without Redis in
    tests and single-process development. Every read-modify-write runs
    under one lock, which gives ``pop`` and ``delete_if_equals`` the same
    at-most-once guarantee as the Redis scripts.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def delete(self, key: str) -> int:
        with self._lock:
            present = self._live(key) is not None
            self._entries.pop(key, None)
            return int(present)

    async def delete_pattern(self, prefix: str) -> int:
        with self._lock:
            matched = [key for key in self._entries if key.startswith(prefix)]
            removed = 0
            for key in matched:
                if self._live(key) is not None:
                    removed += 1
                self._entries.pop(key, None)
            return removed

    async def pop(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            self._entries.pop(key, None)
            return value

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        with self._lock:
            if self._live(key) != expected:
                return False
            del self._entries[key]
            return True

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self.set(key, json.dumps(value, default=str), ttl_seconds)

    async def get_json(self, key: str) -> Optional[Any]:
        cached = await self.get(key)
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until ``key`` expires, or None when absent."""
        with self._lock:
            if self._live(key) is None:
                return None
            return self._entries[key][1] - self._clock()

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
