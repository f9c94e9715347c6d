"""Structured logging for Mira.

structlog is configured once at import from ``LOG_LEVEL``, ``LOG_JSON`` and
``LOG_DEV_MODE``. Every entry carries the request's correlation id. Two
processors keep provider keys out of the output: fields whose name looks
secret are masked, and free-text error fields have key-shaped substrings
scrubbed (providers and drivers like to quote the key or DSN they rejected).
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional, Pattern, Tuple

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


_SECRET_FIELD_MARKERS = (
    "password",
    "secret",
    "token",
    "api_key",
    "apikey",
    "authorization",
    "ciphertext",
    "plaintext",
    "credential_blob",
)

# Free-text fields that may quote upstream error bodies
_TEXT_FIELDS = ("error", "message", "detail", "body")

_CREDENTIAL_PATTERNS: List[Tuple[Pattern[str], str]] = [
    # OpenAI and Anthropic keys
    (re.compile(r"sk-[A-Za-z0-9_\-]{8,}"), "sk-***"),
    # Google API keys
    (re.compile(r"AIza[0-9A-Za-z_\-]{20,}"), "AIza***"),
    (
        re.compile(r"(?i)\b(api[_-]?key|password|secret|token)(\s*[:=]\s*)[^\s,;&]+"),
        r"\1\2***",
    ),
    # user:password@ in connection URLs
    (re.compile(r"(://[^:/@\s]*):[^@/\s]+@"), r"\1:***@"),
]


def scrub_credentials(text: str) -> str:
    """Replace key-shaped and password-shaped substrings in ``text``."""
    for pattern, replacement in _CREDENTIAL_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask_secret_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if not any(marker in lower_key for marker in _SECRET_FIELD_MARKERS):
            continue
        if isinstance(value, str) and len(value) > 4:
            # first and last two characters are enough to tell keys apart
            event_dict[key] = value[:2] + "***" + value[-2:]
        elif value is not None and not isinstance(value, bool):
            event_dict[key] = "***"
    return event_dict


def _scrub_text_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key in _TEXT_FIELDS:
        value = event_dict.get(key)
        if isinstance(value, str):
            event_dict[key] = scrub_credentials(value)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """(Re)configure structlog; console output when not JSON or in development."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _mask_secret_fields,
        _scrub_text_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_CLIENT_UNSAFE_PATTERNS = [
    re.compile(p)
    for p in (
        r"(?i)(select|insert|update|delete)\s+.{0,50}",
        r"(?i)database\s+error",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+",
        r"(?i)[a-z]:\\[^\s]+",
        r"(?i)traceback\s*\(most recent call last\)",
    )
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Make free text safe to return to a client.

    Credentials are scrubbed, then queries, filesystem paths and stack trace
    markers are replaced, and the result is capped at 500 characters.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = scrub_credentials(error)
    for pattern in _CLIENT_UNSAFE_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > 500:
        result = result[:497] + "..."
    return result
