from __future__ import annotations

import asyncio
from typing import List

from mira.config import OutputMode
from mira.logging import get_logger
from mira.service.context import ChatTurn
from mira.service.errors import (
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ServerError,
    ServiceError,
)
from mira.service.providers import ProviderRegistry

logger = get_logger(__name__)


def strip_emphasis(text: str) -> str:
    """Plain output mode: drop markdown emphasis markers."""
    return text.replace("*", "")


class ProviderDispatcher:
    """Sends an assembled context to the selected provider within a deadline."""

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        timeout_seconds: float = 60.0,
        retry_once: bool = False,
        output_mode: OutputMode = OutputMode.MARKDOWN,
    ) -> None:
        self.registry = registry
        self.timeout_seconds = timeout_seconds
        self.retry_once = retry_once
        self.output_mode = OutputMode(output_mode)

    async def _call(self, provider_name: str, context: List[ChatTurn], api_key: str) -> str:
        adapter = self.registry.get(provider_name)
        try:
            return await asyncio.wait_for(
                adapter.complete(context, api_key, timeout=self.timeout_seconds),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderTimeoutError(provider_name) from exc

    async def dispatch(self, provider_name: str, context: List[ChatTurn], api_key: str) -> str:
        attempts = 2 if self.retry_once else 1
        for attempt in range(1, attempts + 1):
            try:
                reply = await self._call(provider_name, context, api_key)
                break
            except ProviderUnavailableError as exc:
                logger.warning(
                    "provider_dispatch_failed",
                    provider=provider_name,
                    error_code=exc.error_code,
                    attempt=attempt,
                )
                if attempt >= attempts:
                    raise
            except ProviderError as exc:
                logger.warning(
                    "provider_dispatch_failed",
                    provider=provider_name,
                    error_code=exc.error_code,
                    attempt=attempt,
                )
                raise
            except ServiceError:
                raise
            except Exception as exc:
                logger.error(
                    "provider_dispatch_unexpected_error",
                    provider=provider_name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise ServerError("the assistant failed to produce a reply") from exc
        if self.output_mode is OutputMode.PLAIN:
            reply = strip_emphasis(reply)
        return reply
