import asyncio
from unittest.mock import patch

import pytest

from mira.config import OutputMode
from mira.service.dispatcher import ProviderDispatcher
from mira.service.errors import (
    ProviderAuthError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ServerError,
    ValidationError,
)
from mira.service.providers import ProviderRegistry

CONTEXT = [{"role": "user", "content": "hi"}]


class ScriptedProvider:
    """Replays a list of outcomes; exceptions are raised, strings returned."""

    name = "scripted"

    def __init__(self, *outcomes, delay: float = 0.0):
        self.outcomes = list(outcomes)
        self.delay = delay
        self.calls = 0
        self.keys = []

    async def complete(self, messages, api_key, *, timeout):
        self.calls += 1
        self.keys.append(api_key)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def _dispatcher(provider, **kwargs):
    return ProviderDispatcher(ProviderRegistry([provider]), **kwargs)


async def test_dispatch_returns_reply_and_passes_key():
    provider = ScriptedProvider("**bold** reply")
    reply = await _dispatcher(provider).dispatch("scripted", CONTEXT, "key-1")
    assert reply == "**bold** reply"
    assert provider.keys == ["key-1"]


async def test_plain_mode_strips_emphasis():
    provider = ScriptedProvider("**bold** and *italic*")
    dispatcher = _dispatcher(provider, output_mode=OutputMode.PLAIN)
    assert await dispatcher.dispatch("scripted", CONTEXT, "k") == "bold and italic"


async def test_unknown_provider_is_validation_error():
    with pytest.raises(ValidationError):
        await _dispatcher(ScriptedProvider()).dispatch("nope", CONTEXT, "k")


async def test_slow_provider_times_out():
    provider = ScriptedProvider("late", delay=1.0)
    dispatcher = _dispatcher(provider, timeout_seconds=0.05)
    with pytest.raises(ProviderTimeoutError) as excinfo:
        await dispatcher.dispatch("scripted", CONTEXT, "k")
    assert excinfo.value.status_code == 504


async def test_no_retry_by_default():
    provider = ScriptedProvider(ProviderUnavailableError("scripted"), "ok")
    with pytest.raises(ProviderUnavailableError):
        await _dispatcher(provider).dispatch("scripted", CONTEXT, "k")
    assert provider.calls == 1


async def test_single_retry_on_unavailable_when_enabled():
    provider = ScriptedProvider(ProviderUnavailableError("scripted"), "ok")
    reply = await _dispatcher(provider, retry_once=True).dispatch("scripted", CONTEXT, "k")
    assert reply == "ok"
    assert provider.calls == 2


async def test_retry_is_bounded_to_one():
    provider = ScriptedProvider(
        ProviderUnavailableError("scripted"), ProviderUnavailableError("scripted"), "ok"
    )
    with pytest.raises(ProviderUnavailableError):
        await _dispatcher(provider, retry_once=True).dispatch("scripted", CONTEXT, "k")
    assert provider.calls == 2


async def test_auth_errors_are_not_retried():
    provider = ScriptedProvider(ProviderAuthError("scripted"), "ok")
    with pytest.raises(ProviderAuthError):
        await _dispatcher(provider, retry_once=True).dispatch("scripted", CONTEXT, "k")
    assert provider.calls == 1


async def test_unexpected_exception_becomes_server_error():
    provider = ScriptedProvider(KeyError("choices"))
    with patch("mira.service.dispatcher.logger") as mock_logger:
        with pytest.raises(ServerError) as excinfo:
            await _dispatcher(provider).dispatch("scripted", CONTEXT, "k")
    assert "choices" not in excinfo.value.message
    mock_logger.error.assert_called_once()
