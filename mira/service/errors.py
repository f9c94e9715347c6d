from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code. The message is always safe to show to the caller: provider
    and store failures are categorized at their origin and never carry raw
    upstream text.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Caller identity missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class MissingCredentialError(ServiceError):
    """No stored or default key exists for the requested provider (400)."""
    status_code = 400
    error_code = "missing_credential"

    def __init__(self, provider: str) -> None:
        super().__init__(
            f"no API key available for provider '{provider}'; save one in settings",
            detail={"provider": provider},
        )
        self.provider = provider


class AdmissionDeniedError(ServiceError):
    """Client exhausted its request quota for the current window (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after: int, *, limit: Optional[int] = None) -> None:
        detail = {"retry_after": retry_after}
        if limit is not None:
            detail["limit"] = limit
        super().__init__("request limit exceeded; try again later", detail=detail)
        self.retry_after = retry_after


class AdmissionUnavailableError(ServiceError):
    """Counter store unreachable while the gate fails closed (503)."""
    status_code = 503
    error_code = "admission_unavailable"


class ProviderError(ServiceError):
    """Base for categorized provider failures."""
    status_code = 502
    error_code = "provider_error"

    def __init__(self, provider: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or self.default_message.format(provider=provider),
            detail={"provider": provider},
        )
        self.provider = provider

    default_message = "provider '{provider}' failed"


class ProviderAuthError(ProviderError):
    """Provider rejected the API key (502)."""
    status_code = 502
    error_code = "provider_auth_error"
    default_message = "provider '{provider}' rejected the API key"


class ProviderQuotaError(ProviderError):
    """Provider is rate limiting or the key is out of quota (503)."""
    status_code = 503
    error_code = "provider_quota_exceeded"
    default_message = "provider '{provider}' quota exceeded; please wait a moment"


class ProviderUnavailableError(ProviderError):
    """Provider could not be reached or returned a server error (503)."""
    status_code = 503
    error_code = "provider_unavailable"
    default_message = "provider '{provider}' is unavailable; try again"


class ProviderTimeoutError(ProviderUnavailableError):
    """Provider did not answer within the configured timeout (504)."""
    status_code = 504
    error_code = "provider_timeout"
    default_message = "provider '{provider}' timed out"


class ProviderInvalidResponseError(ProviderError):
    """Provider answered with an empty or malformed reply (502)."""
    status_code = 502
    error_code = "provider_invalid_response"
    default_message = "provider '{provider}' returned an invalid response"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "MissingCredentialError",
    "AdmissionDeniedError",
    "AdmissionUnavailableError",
    "ProviderError",
    "ProviderAuthError",
    "ProviderQuotaError",
    "ProviderUnavailableError",
    "ProviderTimeoutError",
    "ProviderInvalidResponseError",
    "ServerError",
]
