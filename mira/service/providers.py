"""Provider adapters: one per LLM vendor, behind a common async interface.

Each adapter translates the provider-neutral context (``system``, ``user`` and
``assistant`` turns) into its vendor's request shape and maps every failure to
the provider error taxonomy in ``mira.service.errors``. Raw upstream error
text is logged, never raised.
"""

from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple

import httpx
import openai
from openai import AsyncOpenAI

from mira.logging import get_logger
from mira.service.context import SYSTEM_ROLE, ChatTurn
from mira.service.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderInvalidResponseError,
    ProviderQuotaError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ValidationError,
)
from mira.storage.models import ASSISTANT_ROLE, USER_ROLE

logger = get_logger(__name__)

DEFAULT_MAX_OUTPUT_TOKENS = 1024

_QUOTA_MARKERS = ("quota", "resource_exhausted", "rate limit", "rate_limit")
_AUTH_MARKERS = ("api key", "api_key_invalid", "permission_denied", "unauthenticated")


class ProviderAdapter(Protocol):
    name: str

    async def complete(
        self, messages: List[ChatTurn], api_key: str, *, timeout: float
    ) -> str: ...


def split_system(messages: List[ChatTurn]) -> Tuple[Optional[str], List[ChatTurn]]:
    """Separate system turns from the dialogue for vendors that take them apart."""
    system_parts = [m["content"] for m in messages if m["role"] == SYSTEM_ROLE]
    dialogue = [m for m in messages if m["role"] != SYSTEM_ROLE]
    return ("\n\n".join(system_parts) or None), dialogue


def merge_consecutive(turns: List[dict]) -> List[dict]:
    """Join adjacent turns with the same role; some vendors require alternation."""
    merged: List[dict] = []
    for turn in turns:
        if merged and merged[-1]["role"] == turn["role"]:
            merged[-1] = {**merged[-1], "content": merged[-1]["content"] + "\n\n" + turn["content"]}
        else:
            merged.append(dict(turn))
    return merged


def start_with_user(turns: List[dict], user_role: str = USER_ROLE) -> List[dict]:
    """Drop leading non-user turns; vendors reject a dialogue that opens with a reply."""
    for index, turn in enumerate(turns):
        if turn["role"] == user_role:
            return turns[index:]
    return []


def _error_for_status(provider: str, status: int, body: str) -> ProviderError:
    lowered = body.lower()
    if status in (401, 403):
        return ProviderAuthError(provider)
    if status == 429 or any(marker in lowered for marker in _QUOTA_MARKERS):
        return ProviderQuotaError(provider)
    if status == 400 and any(marker in lowered for marker in _AUTH_MARKERS):
        return ProviderAuthError(provider)
    if status == 408:
        return ProviderTimeoutError(provider)
    if status >= 500:
        return ProviderUnavailableError(provider)
    return ProviderInvalidResponseError(provider)


class _HttpProvider:
    """Shared plumbing for vendors reached over plain HTTPS with httpx."""

    name = "http"
    base_url = ""

    def __init__(
        self,
        model: str,
        *,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.model = model
        self.max_output_tokens = max_output_tokens
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(60.0, connect=10.0),
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _post_json(
        self, path: str, payload: dict, headers: dict, *, timeout: float
    ) -> dict:
        client = await self._get_client()
        try:
            response = await client.post(path, json=payload, headers=headers, timeout=timeout)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            body = exc.response.text[:500]
            logger.warning(
                "provider_http_error",
                provider=self.name,
                status_code=exc.response.status_code,
                response_body=body,
            )
            raise _error_for_status(self.name, exc.response.status_code, body) from exc
        except httpx.TimeoutException as exc:
            logger.warning("provider_timeout", provider=self.name, error=str(exc))
            raise ProviderTimeoutError(self.name) from exc
        except httpx.TransportError as exc:
            logger.warning("provider_connect_error", provider=self.name, error=str(exc))
            raise ProviderUnavailableError(self.name) from exc
        try:
            data = response.json()
        except ValueError as exc:
            logger.warning("provider_invalid_json", provider=self.name)
            raise ProviderInvalidResponseError(self.name) from exc
        if not isinstance(data, dict):
            raise ProviderInvalidResponseError(self.name)
        return data


class AnthropicProvider(_HttpProvider):
    name = "anthropic"
    base_url = "https://api.anthropic.com"
    API_VERSION = "2023-06-01"

    def build_payload(self, messages: List[ChatTurn]) -> dict:
        system, dialogue = split_system(messages)
        payload = {
            "model": self.model,
            "max_tokens": self.max_output_tokens,
            "messages": start_with_user(
                merge_consecutive(
                    [{"role": m["role"], "content": m["content"]} for m in dialogue]
                )
            ),
        }
        if system:
            payload["system"] = system
        return payload

    async def complete(self, messages: List[ChatTurn], api_key: str, *, timeout: float) -> str:
        data = await self._post_json(
            "/v1/messages",
            self.build_payload(messages),
            {"x-api-key": api_key, "anthropic-version": self.API_VERSION},
            timeout=timeout,
        )
        blocks = data.get("content") or []
        text = "".join(
            block.get("text", "")
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )
        if not text.strip():
            raise ProviderInvalidResponseError(self.name)
        return text


class GeminiProvider(_HttpProvider):
    name = "gemini"
    base_url = "https://generativelanguage.googleapis.com"

    _ROLE_MAP = {USER_ROLE: "user", ASSISTANT_ROLE: "model"}

    def build_payload(self, messages: List[ChatTurn]) -> dict:
        system, dialogue = split_system(messages)
        turns = start_with_user(
            merge_consecutive(
                [{"role": self._ROLE_MAP[m["role"]], "content": m["content"]} for m in dialogue]
            ),
            self._ROLE_MAP[USER_ROLE],
        )
        payload: dict = {
            "contents": [
                {"role": turn["role"], "parts": [{"text": turn["content"]}]} for turn in turns
            ],
            "generationConfig": {"maxOutputTokens": self.max_output_tokens},
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        return payload

    async def complete(self, messages: List[ChatTurn], api_key: str, *, timeout: float) -> str:
        data = await self._post_json(
            f"/v1beta/models/{self.model}:generateContent",
            self.build_payload(messages),
            {"x-goog-api-key": api_key},
            timeout=timeout,
        )
        try:
            parts = data["candidates"][0]["content"]["parts"]
            text = "".join(part.get("text", "") for part in parts)
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            finish = None
            candidates = data.get("candidates")
            if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
                finish = candidates[0].get("finishReason")
            logger.warning("provider_reply_malformed", provider=self.name, finish_reason=finish)
            raise ProviderInvalidResponseError(self.name) from exc
        if not text.strip():
            raise ProviderInvalidResponseError(self.name)
        return text


class OpenAIProvider:
    name = "openai"

    def __init__(
        self,
        model: str,
        *,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
        base_url: Optional[str] = None,
        client_factory: Optional[Callable[..., AsyncOpenAI]] = None,
    ) -> None:
        self.model = model
        self.max_output_tokens = max_output_tokens
        self.base_url = base_url
        self._client_factory = client_factory or AsyncOpenAI

    async def complete(self, messages: List[ChatTurn], api_key: str, *, timeout: float) -> str:
        # keys are per user, so the client is per call; retries belong to the dispatcher
        client = self._client_factory(
            api_key=api_key, base_url=self.base_url, timeout=timeout, max_retries=0
        )
        try:
            completion = await client.chat.completions.create(
                model=self.model,
                messages=[{"role": m["role"], "content": m["content"]} for m in messages],
                max_tokens=self.max_output_tokens,
            )
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise ProviderAuthError(self.name) from exc
        except openai.RateLimitError as exc:
            raise ProviderQuotaError(self.name) from exc
        except openai.APITimeoutError as exc:
            raise ProviderTimeoutError(self.name) from exc
        except openai.APIConnectionError as exc:
            logger.warning("provider_connect_error", provider=self.name, error=str(exc))
            raise ProviderUnavailableError(self.name) from exc
        except openai.APIStatusError as exc:
            logger.warning(
                "provider_http_error",
                provider=self.name,
                status_code=exc.status_code,
                response_body=str(exc.message)[:500],
            )
            raise _error_for_status(self.name, exc.status_code, str(exc.message)) from exc
        finally:
            await client.close()
        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        content = first_choice.message.content if first_choice else None
        if not content or not content.strip():
            logger.warning("provider_reply_empty", provider=self.name)
            raise ProviderInvalidResponseError(self.name)
        return content


class EchoProvider:
    """Deterministic provider for test mode; never leaves the process."""

    name = "echo"
    requires_key = False

    def __init__(self) -> None:
        self.calls = 0

    async def complete(self, messages: List[ChatTurn], api_key: str, *, timeout: float) -> str:
        self.calls += 1
        last_user = next(
            (m["content"] for m in reversed(messages) if m["role"] == USER_ROLE), ""
        )
        return f"echo: {last_user}"


class ProviderRegistry:
    """Name-to-adapter lookup; names are the public provider identifiers."""

    def __init__(self, adapters: Iterable[ProviderAdapter] = ()) -> None:
        self._adapters: Dict[str, ProviderAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> ProviderAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            raise ValidationError(
                f"unknown provider '{name}'",
                detail={"provider": name, "allowed": self.names},
            )
        return adapter

    def __contains__(self, name: object) -> bool:
        return name in self._adapters

    @property
    def names(self) -> List[str]:
        return list(self._adapters)

    async def close(self) -> None:
        for adapter in self._adapters.values():
            close = getattr(adapter, "close", None)
            if close is not None:
                await close()


def build_registry(settings) -> ProviderRegistry:
    registry = ProviderRegistry(
        [
            OpenAIProvider(settings.openai_model),
            AnthropicProvider(settings.anthropic_model),
            GeminiProvider(settings.gemini_model),
        ]
    )
    if settings.test_mode:
        registry.register(EchoProvider())
    return registry
