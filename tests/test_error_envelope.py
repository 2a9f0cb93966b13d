"""Tests for the error envelope and the registered exception handlers.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError as SchemaError

from homestead.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    register_exception_handlers,
)
from homestead.api.schemas import Envelope, ErrorBody
from homestead.service.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    FatalConfigurationError,
    NotFoundError,
    RateLimitedError,
    TwoFactorSetupRequiredError,
    ValidationError,
)
from homestead.storage.errors import UniqueViolation


class TestSchemas:
    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(SchemaError):
            ErrorBody(code="teapot", message="nope")

    def test_mfa_code_is_stable(self):
        assert ErrorBody(code="mfa_setup_required", message="m").code == "mfa_setup_required"

    def test_envelope_status_values(self):
        assert Envelope(status="ok").error is None
        with pytest.raises(SchemaError):
            Envelope(status="success")

    def test_request_id_is_generated(self):
        first, second = Envelope(status="ok"), Envelope(status="ok")
        assert len(first.request_id) == 36
        assert first.request_id != second.request_id


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status, code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
            (503, "server_error"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_every_mapped_code_is_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="ok")


def _app_raising(exc: Exception) -> TestClient:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    @pytest.mark.parametrize(
        "exc, status, code",
        [
            (ValidationError("bad input"), 400, "validation_error"),
            (AuthenticationError("invalid credentials"), 401, "unauthorized"),
            (TwoFactorSetupRequiredError("finish setup"), 401, "mfa_setup_required"),
            (AuthorizationError("admin access required"), 403, "forbidden"),
            (NotFoundError("user not found"), 404, "not_found"),
            (ConflictError("account already exists"), 409, "conflict"),
            (RateLimitedError("slow down"), 429, "rate_limited"),
        ],
    )
    def test_service_errors_render_envelope(self, exc, status, code):
        response = _app_raising(exc).get("/boom")

        assert response.status_code == status
        body = response.json()
        assert body["status"] == "error"
        assert body["data"] is None
        assert body["error"]["code"] == code
        assert body["error"]["message"] == exc.message
        assert body["request_id"]

    def test_unauthorized_carries_bearer_challenge(self):
        response = _app_raising(AuthenticationError("access token required")).get("/boom")
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_per_instance_status_override(self):
        exc = AuthenticationError("invalid or expired token", status_code=403, error_code="forbidden")
        response = _app_raising(exc).get("/boom")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"
        assert "WWW-Authenticate" not in response.headers

    def test_fatal_configuration_hides_detail(self):
        exc = FatalConfigurationError(
            "secrets file incomplete", detail={"path": "/data/secrets.env"}
        )
        response = _app_raising(exc).get("/boom")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error == {"code": "server_error", "message": "service unavailable", "details": None}

    def test_storage_uniqueness_is_generic_conflict(self):
        response = _app_raising(UniqueViolation("duplicate", {"field": "email"})).get("/boom")

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["message"] == "resource conflict"
        assert error["details"] is None

    def test_unhandled_exception_is_generic_500(self):
        response = _app_raising(RuntimeError("db password is hunter2")).get("/boom")

        assert response.status_code == 500
        assert response.json()["error"]["message"] == "internal server error"
        assert "hunter2" not in response.text

    def test_unknown_route_is_enveloped(self):
        response = _app_raising(ValidationError("unused")).get("/missing")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
