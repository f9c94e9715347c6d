"""Key-value state shared by every request: admission windows and cached replies.

The orchestrator depends on the ``SharedState`` protocol only, so running a
single instance (``MemorySharedState``) or many instances behind Redis
(``RedisSharedState`` in ``mira.storage.redis_cache``) is a configuration
choice.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple


@dataclass(frozen=True)
class WindowHit:
    """Outcome of one atomic increment-and-check on a fixed window."""

    allowed: bool
    count: int
    retry_after: float = 0.0


class SharedState(Protocol):
    backend: str

    async def hit_window(self, key: str, limit: int, window_seconds: float) -> WindowHit: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: float) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def sweep(self, *, window_seconds: Optional[float] = None) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class MemorySharedState:
    """In-process shared state; consistent for a single service instance only.

    The lock guards dict updates only and is never held across an await on
    anything slower than the dict itself.
    """

    backend = "memory"

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._values: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    async def hit_window(self, key: str, limit: int, window_seconds: float) -> WindowHit:
        async with self._lock:
            now = self._clock()
            entry = self._windows.get(key)
            if entry is None or now >= entry[0] + window_seconds:
                self._windows[key] = (now, 1)
                return WindowHit(True, 1)
            start, count = entry
            if count >= limit:
                return WindowHit(False, count, start + window_seconds - now)
            self._windows[key] = (start, count + 1)
            return WindowHit(True, count + 1)

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._values.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                self._values.pop(key, None)
                return None
            return value

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        async with self._lock:
            self._values[key] = (value, self._clock() + ttl_seconds)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._values.pop(key, None)
            self._windows.pop(key, None)

    async def sweep(self, *, window_seconds: Optional[float] = None) -> int:
        """Drop expired values, and windows older than ``window_seconds`` if given."""
        async with self._lock:
            now = self._clock()
            expired = [k for k, (_, exp) in self._values.items() if now >= exp]
            for key in expired:
                del self._values[key]
            removed = len(expired)
            if window_seconds is not None:
                stale = [
                    k for k, (start, _) in self._windows.items() if now >= start + window_seconds
                ]
                for key in stale:
                    del self._windows[key]
                removed += len(stale)
            return removed

    def __len__(self) -> int:
        return len(self._values)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        async with self._lock:
            self._values.clear()
            self._windows.clear()
