from __future__ import annotations

import asyncio
import hashlib
import math
from dataclasses import dataclass

from redis.exceptions import RedisError

from mira.config import RateLimitFailMode
from mira.logging import get_logger
from mira.service.errors import AdmissionDeniedError, AdmissionUnavailableError
from mira.storage.shared_state import SharedState

logger = get_logger(__name__)

_FALLBACK_WINDOW_SECONDS = 60
_KEY_PREFIX = "admission"

# Failures that mean the counter store itself is unreachable or misbehaving.
_STORE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int = 0

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
            headers["X-RateLimit-Reset"] = str(self.retry_after_seconds)
        return headers


class AdmissionGate:
    """Fixed-window request quota per client key, held in shared state.

    Every instance of the service counts against the same window, so the quota
    holds across a horizontally scaled deployment when the state is Redis.
    """

    def __init__(
        self,
        state: SharedState,
        *,
        limit: int,
        window_seconds: int,
        fail_mode: RateLimitFailMode = RateLimitFailMode.OPEN,
    ) -> None:
        self.state = state
        self.limit = limit
        if window_seconds <= 0:
            logger.warning(
                "admission_window_invalid",
                window_seconds=window_seconds,
                fallback_seconds=_FALLBACK_WINDOW_SECONDS,
            )
            window_seconds = _FALLBACK_WINDOW_SECONDS
        self.window_seconds = window_seconds
        self.fail_mode = RateLimitFailMode(fail_mode)

    @property
    def enabled(self) -> bool:
        return self.limit > 0

    @staticmethod
    def _state_key(client_key: str) -> str:
        digest = hashlib.sha256(client_key.encode()).hexdigest()
        return f"{_KEY_PREFIX}:{digest}"

    async def admit(self, client_key: str) -> AdmissionDecision:
        if not self.enabled:
            return AdmissionDecision(True, self.limit, self.limit)
        try:
            hit = await self.state.hit_window(
                self._state_key(client_key), self.limit, self.window_seconds
            )
        except _STORE_ERRORS as exc:
            return self._degraded(exc)
        if not hit.allowed:
            retry_after = max(1, math.ceil(hit.retry_after))
            logger.info(
                "admission_denied",
                count=hit.count,
                limit=self.limit,
                retry_after=retry_after,
            )
            return AdmissionDecision(False, self.limit, 0, retry_after)
        return AdmissionDecision(True, self.limit, max(0, self.limit - hit.count))

    def _degraded(self, exc: Exception) -> AdmissionDecision:
        logger.error(
            "admission_store_unreachable",
            alert=True,
            fail_mode=self.fail_mode.value,
            backend=getattr(self.state, "backend", "unknown"),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        if self.fail_mode is RateLimitFailMode.CLOSED:
            raise AdmissionUnavailableError(
                "request admission is temporarily unavailable; try again shortly"
            ) from exc
        return AdmissionDecision(True, self.limit, self.limit)

    async def enforce(self, client_key: str) -> AdmissionDecision:
        decision = await self.admit(client_key)
        if not decision.allowed:
            raise AdmissionDeniedError(decision.retry_after_seconds, limit=decision.limit)
        return decision

    async def sweep(self) -> int:
        return await self.state.sweep(window_seconds=self.window_seconds)
