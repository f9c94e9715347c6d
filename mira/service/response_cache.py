from __future__ import annotations

import asyncio
import hashlib
import json
import re
import time
import unicodedata
from typing import Callable, Optional

from mira.config import CacheKeyScope
from mira.logging import get_logger
from mira.storage.shared_state import SharedState

logger = get_logger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_KEY_PREFIX = "reply"


def normalize_text(text: str) -> str:
    """Canonical form used for fingerprinting: NFKC, trimmed, single spaces."""
    return _WHITESPACE_RE.sub(" ", unicodedata.normalize("NFKC", text)).strip()


class ResponseCache:
    """Short-lived cache of provider replies keyed by a message fingerprint.

    The cache is an optimization only. Lookups that fail are misses and
    failed writes are logged, so a broken cache never fails a chat turn.
    Concurrent identical misses may each reach the provider.
    """

    def __init__(
        self,
        state: SharedState,
        *,
        ttl_seconds: float,
        scope: CacheKeyScope = CacheKeyScope.TEXT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("cache ttl must be positive")
        self.state = state
        self.ttl_seconds = ttl_seconds
        self.scope = CacheKeyScope(scope)
        self._clock = clock

    def fingerprint(
        self,
        text: str,
        *,
        conversation_id: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> str:
        parts = [normalize_text(text)]
        if self.scope in (CacheKeyScope.PROVIDER, CacheKeyScope.CONVERSATION):
            parts.append(provider or "")
        if self.scope is CacheKeyScope.CONVERSATION:
            parts.append(conversation_id or "")
        return hashlib.sha256("\x00".join(parts).encode()).hexdigest()

    def _key(self, fingerprint: str) -> str:
        return f"{_KEY_PREFIX}:{fingerprint}"

    async def lookup(self, fingerprint: str) -> Optional[str]:
        key = self._key(fingerprint)
        try:
            raw = await self.state.get(key)
        except Exception as exc:
            logger.warning("response_cache_lookup_failed", error_type=type(exc).__name__, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            entry = json.loads(raw)
            text = entry["text"]
            stored_at = float(entry["stored_at"])
        except (ValueError, KeyError, TypeError):
            logger.warning("response_cache_entry_corrupt", fingerprint=fingerprint)
            await self._discard(key)
            return None
        if self._clock() - stored_at >= self.ttl_seconds:
            await self._discard(key)
            return None
        return text

    async def store(self, fingerprint: str, text: str) -> None:
        entry = json.dumps({"text": text, "stored_at": self._clock()})
        try:
            await self.state.set(self._key(fingerprint), entry, self.ttl_seconds)
        except Exception as exc:
            logger.warning("response_cache_store_failed", error_type=type(exc).__name__, error=str(exc))

    async def _discard(self, key: str) -> None:
        try:
            await self.state.delete(key)
        except Exception as exc:
            logger.warning("response_cache_delete_failed", error_type=type(exc).__name__, error=str(exc))

    async def sweep(self) -> int:
        removed = await self.state.sweep()
        if removed:
            logger.debug("response_cache_swept", removed=removed)
        return removed

    async def run_sweeper(self, interval_seconds: float, *, extra=None) -> None:
        """Sweep expired entries forever; cancel the task to stop it.

        ``extra`` is an optional coroutine function run on the same schedule,
        used to prune stale admission windows.
        """
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep()
                if extra is not None:
                    await extra()
            except Exception as exc:
                logger.warning("response_cache_sweep_failed", error_type=type(exc).__name__, error=str(exc))
