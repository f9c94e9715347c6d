from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from mira.logging import get_logger

logger = get_logger(__name__)

# Context windows beyond this are rejected; provider calls have a cost and a
# context-length ceiling.
MAX_HISTORY_CEILING = 50


class ProviderName(str, Enum):
    """LLM providers the dispatcher knows how to reach."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    ECHO = "echo"


class RateLimitFailMode(str, Enum):
    """Admission behaviour when the shared counter store is unreachable.

    - OPEN: admit the request, log an alert for the operator (availability first)
    - CLOSED: deny with a 503 (cost first)
    """

    OPEN = "open"
    CLOSED = "closed"


class CacheKeyScope(str, Enum):
    """What the response cache fingerprint is scoped by.

    - TEXT: normalized message text only; identical prompts share a reply
      across users, conversations and providers
    - PROVIDER: text plus provider name
    - CONVERSATION: text plus provider plus conversation id
    """

    TEXT = "text"
    PROVIDER = "provider"
    CONVERSATION = "conversation"


class OutputMode(str, Enum):
    MARKDOWN = "markdown"
    PLAIN = "plain"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the chat orchestration core."""

    database_url: str = env_field("postgresql://localhost:5432/mira", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/mira", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviours: echo provider, generated vault key.",
    )

    # Admission gate
    rate_limit_requests: int = env_field(1500, "RATE_LIMIT_REQUESTS")
    rate_limit_window_seconds: int = env_field(24 * 60 * 60, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_fail_mode: RateLimitFailMode = env_field(
        RateLimitFailMode.OPEN,
        "RATE_LIMIT_FAIL_MODE",
        description="open: admit and alert when the counter store is down; closed: deny with 503",
    )

    # Response cache
    response_cache_ttl_seconds: int = env_field(10 * 60, "RESPONSE_CACHE_TTL_SECONDS")
    response_cache_sweep_seconds: int | None = env_field(
        None,
        "RESPONSE_CACHE_SWEEP_SECONDS",
        description="Expired-entry sweep interval; defaults to half the TTL",
    )
    cache_key_scope: CacheKeyScope = env_field(CacheKeyScope.TEXT, "CACHE_KEY_SCOPE")

    # Context assembly
    max_history_messages: int = env_field(8, "MAX_HISTORY_MESSAGES")
    system_instruction: str | None = env_field(
        "You are Mira, a helpful and concise assistant.", "SYSTEM_INSTRUCTION"
    )
    max_message_chars: int = env_field(8000, "MAX_MESSAGE_CHARS")

    # Credentials
    credential_encryption_key: str | None = env_field(None, "CREDENTIAL_ENCRYPTION_KEY")
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    anthropic_api_key: str | None = env_field(None, "ANTHROPIC_API_KEY")
    gemini_api_key: str | None = env_field(None, "GEMINI_API_KEY")

    # Providers
    default_provider: ProviderName = env_field(ProviderName.GEMINI, "DEFAULT_PROVIDER")
    openai_model: str = env_field("gpt-4o-mini", "OPENAI_MODEL")
    anthropic_model: str = env_field("claude-3-5-haiku-latest", "ANTHROPIC_MODEL")
    gemini_model: str = env_field("gemini-1.5-flash", "GEMINI_MODEL")
    provider_timeout_seconds: float = env_field(60.0, "PROVIDER_TIMEOUT_SECONDS")
    provider_retry_once: bool = env_field(
        False,
        "PROVIDER_RETRY_ONCE",
        description="Retry a provider call once when the provider is unavailable",
    )
    output_mode: OutputMode = env_field(OutputMode.MARKDOWN, "OUTPUT_MODE")

    store_timeout_seconds: float = env_field(10.0, "STORE_TIMEOUT_SECONDS")
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000", "http://localhost:3001"], "CORS_ALLOW_ORIGINS"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("redis_url", "credential_encryption_key", "system_instruction")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @field_validator("openai_api_key", "anthropic_api_key", "gemini_api_key")
    @classmethod
    def _strip_default_key(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("max_history_messages")
    @classmethod
    def _bounded_history(cls, value: int) -> int:
        if value < 1 or value > MAX_HISTORY_CEILING:
            raise ValueError(
                f"max_history_messages must be between 1 and {MAX_HISTORY_CEILING}"
            )
        return value

    @field_validator(
        "response_cache_ttl_seconds", "provider_timeout_seconds", "store_timeout_seconds"
    )
    @classmethod
    def _positive(cls, value):
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @model_validator(mode="after")
    def _check_sweep_interval(self) -> "Settings":
        sweep = self.response_cache_sweep_seconds
        if sweep is not None and not 0 < sweep < self.response_cache_ttl_seconds:
            raise ValueError(
                "response_cache_sweep_seconds must be positive and shorter than the cache TTL"
            )
        return self

    @property
    def cache_sweep_interval(self) -> float:
        if self.response_cache_sweep_seconds:
            return float(self.response_cache_sweep_seconds)
        return self.response_cache_ttl_seconds / 2

    def default_credentials(self) -> dict[str, str]:
        """Operator-wide provider keys used when a user has none stored."""
        keys = {
            ProviderName.OPENAI.value: self.openai_api_key,
            ProviderName.ANTHROPIC.value: self.anthropic_api_key,
            ProviderName.GEMINI.value: self.gemini_api_key,
        }
        return {name: key for name, key in keys.items() if key}


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
