from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from mira.api.schemas import Envelope, ErrorBody
from mira.logging import get_correlation_id, get_logger, sanitize_error_message
from mira.service.errors import AdmissionDeniedError, ServiceError
from mira.storage.errors import PersistenceError

logger = get_logger(__name__)

# Codes for errors raised as bare HTTP statuses (routing, method checks)
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    if status_code in _STATUS_TO_CODE:
        return _STATUS_TO_CODE[status_code]
    # other client errors (405, 413, 415, ...) are request problems
    return "validation_error" if 400 <= status_code < 500 else "server_error"


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    envelope = Envelope(
        status="error",
        error=ErrorBody(
            code=code or _error_code_for_status(status_code),
            message=message,
            details=details,
        ),
    )
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def _admission_headers(exc: AdmissionDeniedError) -> dict:
    headers = {
        "Retry-After": str(exc.retry_after),
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Reset": str(exc.retry_after),
    }
    if exc.detail.get("limit") is not None:
        headers["X-RateLimit-Limit"] = str(exc.detail["limit"])
    return headers


async def _on_service_error(request: Request, exc: ServiceError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "service_error",
        path=request.url.path,
        method=request.method,
        status_code=exc.status_code,
        error_code=exc.error_code,
        message=exc.message,
        detail=exc.detail,
    )
    headers = _admission_headers(exc) if isinstance(exc, AdmissionDeniedError) else None
    return _error_response(
        exc.status_code, exc.message, exc.detail or None, code=exc.error_code, headers=headers
    )


async def _on_persistence_error(request: Request, exc: PersistenceError) -> JSONResponse:
    # detail may name tables or DSNs; it stays in the log
    logger.error(
        "persistence_error",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        message=exc.message,
        detail=exc.detail,
    )
    return _error_response(500, exc.message, code="persistence_error")


async def _on_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    # location and reason only; submitted values may be api keys
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    logger.warning(
        "request_validation_error", path=request.url.path, method=request.method, errors=errors
    )
    return _error_response(400, "invalid request", errors, code="validation_error")


async def _on_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    if isinstance(exc.detail, str):
        message = sanitize_error_message(exc.detail)
    else:
        message = "http error"
    if exc.status_code >= 500:
        logger.error(
            "http_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            message=message,
        )
    return _error_response(exc.status_code, message, headers=exc.headers)


async def _on_unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_exception",
        exc_info=exc,
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return _error_response(500, "internal server error", code="server_error")


_HANDLERS = (
    (ServiceError, _on_service_error),
    (PersistenceError, _on_persistence_error),
    (RequestValidationError, _on_request_validation),
    (HTTPException, _on_http_exception),
    (Exception, _on_unhandled),
)


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as the error envelope."""
    for exc_class, handler in _HANDLERS:
        app.add_exception_handler(exc_class, handler)
