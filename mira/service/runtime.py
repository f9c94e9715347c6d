from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from mira.config import Settings, get_settings, reset_settings_cache
from mira.logging import get_logger
from mira.service.admission import AdmissionGate
from mira.service.context import ContextAssembler
from mira.service.credentials import CredentialService
from mira.service.dispatcher import ProviderDispatcher
from mira.service.orchestrator import ChatOrchestrator
from mira.service.providers import build_registry
from mira.service.response_cache import ResponseCache
from mira.service.vault import CredentialVault
from mira.storage.memory import MemoryStore
from mira.storage.postgres import PostgresStore
from mira.storage.redis_cache import RedisSharedState
from mira.storage.shared_state import MemorySharedState

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _build_vault(settings: Settings) -> CredentialVault:
    if settings.credential_encryption_key:
        return CredentialVault(settings.credential_encryption_key)
    if not settings.test_mode:
        raise RuntimeError(
            "CREDENTIAL_ENCRYPTION_KEY is required to store provider keys; "
            "set it or run with TEST_MODE=true."
        )
    logger.warning(
        "credential_key_generated",
        message="No CREDENTIAL_ENCRYPTION_KEY configured; stored provider keys will not survive a restart.",
    )
    return CredentialVault.ephemeral()


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.store_type = store_type

        self.shared_state: Union[RedisSharedState, MemorySharedState, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                state = RedisSharedState(self.settings.redis_url)
                state.verify_connection()
                self.shared_state = state
            except Exception as exc:
                redis_error = exc

        if self.shared_state is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits and the response cache across instances; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and "
                    "cached replies are per-process only."
                ),
                mode=fallback_mode,
            )
            self.shared_state = MemorySharedState()

        self.vault = _build_vault(self.settings)
        self.providers = build_registry(self.settings)
        key_providers = [
            name
            for name in self.providers.names
            if getattr(self.providers.get(name), "requires_key", True)
        ]
        self.credentials = CredentialService(
            self.store,
            self.vault,
            providers=key_providers,
            defaults=self.settings.default_credentials(),
        )
        self.admission = AdmissionGate(
            self.shared_state,
            limit=self.settings.rate_limit_requests,
            window_seconds=self.settings.rate_limit_window_seconds,
            fail_mode=self.settings.rate_limit_fail_mode,
        )
        self.cache = ResponseCache(
            self.shared_state,
            ttl_seconds=self.settings.response_cache_ttl_seconds,
            scope=self.settings.cache_key_scope,
        )
        self.context = ContextAssembler(
            self.store, system_instruction=self.settings.system_instruction
        )
        self.dispatcher = ProviderDispatcher(
            self.providers,
            timeout_seconds=self.settings.provider_timeout_seconds,
            retry_once=self.settings.provider_retry_once,
            output_mode=self.settings.output_mode,
        )
        default_provider = self.settings.default_provider.value
        if default_provider not in self.providers:
            raise RuntimeError(
                f"DEFAULT_PROVIDER '{default_provider}' is not available in this mode"
            )
        self.orchestrator = ChatOrchestrator(
            self.store,
            admission=self.admission,
            cache=self.cache,
            context=self.context,
            dispatcher=self.dispatcher,
            credentials=self.credentials,
            default_provider=default_provider,
            max_history=self.settings.max_history_messages,
            max_message_chars=self.settings.max_message_chars,
            store_timeout_seconds=self.settings.store_timeout_seconds,
        )

        logger.info(
            "runtime_initialized",
            store_type=self.store_type,
            shared_state_backend=self.shared_state.backend,
            providers=self.providers.names,
            default_provider=default_provider,
            rate_limit_requests=self.settings.rate_limit_requests,
            rate_limit_window_seconds=self.admission.window_seconds,
            cache_ttl_seconds=self.settings.response_cache_ttl_seconds,
            cache_key_scope=self.settings.cache_key_scope.value,
        )

    async def close(self) -> None:
        await self.orchestrator.drain(timeout=self.settings.provider_timeout_seconds)
        await self.providers.close()
        if self.shared_state is not None:
            await self.shared_state.close()
        await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once a runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
