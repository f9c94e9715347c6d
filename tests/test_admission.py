"""Tests for the fixed-window admission gate."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from mira.config import RateLimitFailMode
from mira.service.admission import AdmissionGate
from mira.service.errors import AdmissionDeniedError, AdmissionUnavailableError
from mira.storage.shared_state import MemorySharedState


def _gate(clock, *, limit=3, window=60, fail_mode=RateLimitFailMode.OPEN, state=None):
    return AdmissionGate(
        state or MemorySharedState(clock=clock),
        limit=limit,
        window_seconds=window,
        fail_mode=fail_mode,
    )


async def test_window_admits_up_to_limit_then_denies(clock):
    gate = _gate(clock)

    decisions = []
    for offset in (0, 1, 2, 3):
        clock.now = 1_000_000.0 + offset
        decisions.append(await gate.admit("203.0.113.7"))

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert [d.remaining for d in decisions[:3]] == [2, 1, 0]
    assert decisions[3].retry_after_seconds == 57


async def test_window_resets_with_no_carry_over(clock):
    gate = _gate(clock)
    for _ in range(4):
        await gate.admit("client")

    clock.now = 1_000_000.0 + 60
    decision = await gate.admit("client")

    assert decision.allowed is True
    assert decision.remaining == 2


async def test_keys_are_independent(clock):
    gate = _gate(clock, limit=1)
    assert (await gate.admit("a")).allowed is True
    assert (await gate.admit("a")).allowed is False
    assert (await gate.admit("b")).allowed is True


async def test_keys_with_delimiters_do_not_collide(clock):
    gate = _gate(clock, limit=1)
    assert (await gate.admit("user:1")).allowed is True
    assert (await gate.admit("user")).allowed is True
    assert gate._state_key("user:1") != gate._state_key("user")
    assert ":" not in gate._state_key("user:1").split(":", 1)[1]


async def test_concurrent_requests_never_exceed_limit(clock):
    gate = _gate(clock, limit=5)
    decisions = await asyncio.gather(*(gate.admit("burst") for _ in range(20)))
    assert sum(d.allowed for d in decisions) == 5


async def test_enforce_raises_with_retry_after(clock):
    gate = _gate(clock, limit=1)
    await gate.enforce("client")
    clock.advance(10)
    with pytest.raises(AdmissionDeniedError) as excinfo:
        await gate.enforce("client")
    assert excinfo.value.status_code == 429
    assert excinfo.value.error_code == "rate_limited"
    assert excinfo.value.detail["retry_after"] == 50
    assert excinfo.value.detail["limit"] == 1


async def test_non_positive_limit_disables_gate(clock):
    gate = _gate(clock, limit=0)
    for _ in range(10):
        assert (await gate.admit("client")).allowed is True


def test_non_positive_window_falls_back(clock):
    with patch("mira.service.admission.logger") as mock_logger:
        gate = _gate(clock, window=0)
    assert gate.window_seconds == 60
    mock_logger.warning.assert_called_once()


async def test_fail_open_admits_and_alerts(clock):
    state = AsyncMock()
    state.backend = "redis"
    state.hit_window.side_effect = RedisConnectionError("connection refused")
    gate = _gate(clock, state=state)

    with patch("mira.service.admission.logger") as mock_logger:
        decision = await gate.admit("client")

    assert decision.allowed is True
    mock_logger.error.assert_called_once()
    args, kwargs = mock_logger.error.call_args
    assert args[0] == "admission_store_unreachable"
    assert kwargs["alert"] is True
    assert kwargs["fail_mode"] == "open"


async def test_fail_closed_denies_with_unavailable(clock):
    state = AsyncMock()
    state.backend = "redis"
    state.hit_window.side_effect = OSError("network unreachable")
    gate = _gate(clock, state=state, fail_mode=RateLimitFailMode.CLOSED)

    with pytest.raises(AdmissionUnavailableError) as excinfo:
        await gate.admit("client")
    assert excinfo.value.status_code == 503


async def test_decision_headers(clock):
    gate = _gate(clock, limit=1)
    allowed = await gate.admit("client")
    denied = await gate.admit("client")

    assert allowed.headers() == {"X-RateLimit-Limit": "1", "X-RateLimit-Remaining": "0"}
    assert denied.headers()["Retry-After"] == "60"


async def test_sweep_drops_expired_windows(clock):
    state = MemorySharedState(clock=clock)
    gate = _gate(clock, state=state)
    await gate.admit("client")
    clock.advance(61)
    assert await gate.sweep() == 1
