"""Error envelope format and exception-to-response mapping.

Every error response has the shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<safe text>", "details": ...},
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from mira.api.error_handling import (
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from mira.api.schemas import Envelope, ErrorBody
from mira.logging import correlation_id_var
from mira.service.errors import (
    AdmissionDeniedError,
    AdmissionUnavailableError,
    MissingCredentialError,
    ProviderQuotaError,
    ProviderTimeoutError,
    ServiceError,
)
from mira.storage.errors import PersistenceError, StoreTimeoutError


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="missing identity")
        assert error.details is None

    def test_missing_code_raises(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(message="no code")

    def test_unknown_code_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="something_else", message="x")

    @pytest.mark.parametrize(
        "exc",
        [
            MissingCredentialError("openai"),
            AdmissionDeniedError(5),
            AdmissionUnavailableError("down"),
            ProviderQuotaError("gemini"),
            ProviderTimeoutError("anthropic"),
        ],
    )
    def test_every_service_error_code_is_accepted(self, exc):
        assert ErrorBody(code=exc.error_code, message=exc.message).code == exc.error_code


class TestEnvelope:
    def test_request_id_generated(self):
        first = Envelope(status="ok", data={})
        second = Envelope(status="ok", data={})
        assert first.request_id and first.request_id != second.request_id

    def test_status_restricted(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="pending")


class TestErrorResponse:
    def test_uses_status_code_mapping(self):
        response = _error_response(404, "nothing here")
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"

    @pytest.mark.parametrize(
        "status,code",
        [
            (403, "forbidden"),
            (405, "validation_error"),
            (413, "validation_error"),
            (418, "validation_error"),
            (502, "server_error"),
        ],
    )
    def test_unmapped_statuses_keep_their_class(self, status, code):
        assert _error_code_for_status(status) == code

    def test_request_id_taken_from_correlation_id(self):
        token = correlation_id_var.set("corr-123")
        try:
            body = json.loads(_error_response(400, "bad").body)
        finally:
            correlation_id_var.reset(token)
        assert body["request_id"] == "corr-123"


class _Payload(BaseModel):
    api_key: str
    count: int


def _app_raising(exc: Exception) -> TestClient:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    @app.post("/payload")
    async def payload(body: _Payload):
        return {"ok": True}

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_service_error_maps_status_and_code(self):
        client = _app_raising(ProviderQuotaError("gemini"))
        response = client.get("/boom")
        assert response.status_code == 503
        error = response.json()["error"]
        assert error["code"] == "provider_quota_exceeded"
        assert error["details"] == {"provider": "gemini"}

    def test_admission_denial_carries_retry_headers(self):
        client = _app_raising(AdmissionDeniedError(42, limit=3))
        response = client.get("/boom")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.headers["X-RateLimit-Limit"] == "3"
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_persistence_error_hides_detail(self):
        client = _app_raising(
            StoreTimeoutError("append_message", detail={"dsn": "postgresql://secret@db"})
        )
        response = client.get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "persistence_error"
        assert "secret" not in response.text

    def test_custom_status_on_service_error(self):
        client = _app_raising(ServiceError("gone", status_code=404, error_code="not_found"))
        assert client.get("/boom").status_code == 404

    def test_unhandled_exception_is_generic_server_error(self):
        client = _app_raising(RuntimeError("password=hunter2"))
        response = client.get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert "hunter2" not in response.text

    def test_wrong_method_is_enveloped_client_error(self):
        client = _app_raising(RuntimeError("unused"))
        response = client.delete("/boom")
        assert response.status_code == 405
        assert response.json()["error"]["code"] == "validation_error"

    def test_unknown_route_is_enveloped_not_found(self):
        client = _app_raising(RuntimeError("unused"))
        response = client.get("/nowhere")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_bare_forbidden_keeps_client_error_code(self):
        client = _app_raising(HTTPException(status_code=403, detail="no access"))
        response = client.get("/boom")
        assert response.status_code == 403
        assert response.json()["error"] == {
            "code": "forbidden",
            "message": "no access",
            "details": None,
        }

    def test_request_validation_is_400_without_input_echo(self):
        client = _app_raising(RuntimeError("unused"))
        response = client.post("/payload", json={"api_key": "sk-should-not-echo", "count": "x"})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["loc"] == ["body", "count"]
        assert "sk-should-not-echo" not in response.text


def test_persistence_error_is_not_a_service_error():
    assert not issubclass(PersistenceError, ServiceError)
