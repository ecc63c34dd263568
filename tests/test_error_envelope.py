"""Tests for the error envelope and exception mapping.

Every error leaves the service as:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<human_readable>", "details": ...},
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from merchantauth import app as app_module
from merchantauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    service_error_response,
)
from merchantauth.api.schemas import Envelope, ErrorBody
from merchantauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    ServiceUnavailableError,
    UnprocessableStateError,
    ValidationError as ServiceValidationError,
)


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_known_code_accepted(self):
        error = ErrorBody(code="unprocessable_state", message="Account is in an invalid state")

        assert error.details is None

    def test_unknown_code_rejected(self):
        """Codes outside the stable set are refused."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_missing_message_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    """Tests for the response envelope."""

    def test_ok_envelope_has_generated_request_id(self):
        envelope = Envelope(status="ok", data={"message": "hi"})

        assert envelope.error is None
        assert len(envelope.request_id) == 36

    def test_status_is_restricted(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestStatusMapping:
    """Tests for HTTP status to error code mapping."""

    def test_every_service_error_has_a_stable_code(self):
        """Each exception class maps to the code its status implies."""
        for exc_cls in (
            ServiceValidationError,
            AuthenticationError,
            ForbiddenError,
            NotFoundError,
            ConflictError,
            UnprocessableStateError,
            RateLimitedError,
            ServerError,
            ServiceUnavailableError,
        ):
            exc = exc_cls("message")
            assert _error_code_for_status(exc.status_code) == exc.error_code

    def test_unknown_statuses_fall_back(self):
        assert _error_code_for_status(418) == "validation_error"
        assert _error_code_for_status(502) == "server_error"

    def test_mapping_covers_service_statuses(self):
        assert set(_STATUS_TO_CODE) == {400, 401, 403, 404, 409, 422, 429, 500, 503}


class TestResponseFactory:
    """Tests for building JSON error responses."""

    def test_error_response_shape(self):
        response = _error_response(404, "Merchant not found", details={"resource": "Merchant"})

        data = json.loads(response.body)
        assert response.status_code == 404
        assert data["status"] == "error"
        assert data["error"] == {
            "code": "not_found",
            "message": "Merchant not found",
            "details": {"resource": "Merchant"},
        }
        assert data["request_id"]

    def test_rate_limited_error_sets_retry_after(self):
        exc = RateLimitedError("Too many requests", detail={"retry_after": 7})

        response = service_error_response(exc)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "7"

    def test_other_errors_have_no_retry_after(self):
        response = service_error_response(ConflictError("Email already registered"))

        assert response.status_code == 409
        assert "Retry-After" not in response.headers


class TestHandlersOverHttp:
    """Tests for the registered exception handlers."""

    def test_unknown_route_is_enveloped(self):
        client = TestClient(app_module.app)

        response = client.get("/api/does-not-exist")

        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"

    def test_request_id_is_echoed(self):
        client = TestClient(app_module.app)

        response = client.post(
            "/api/auth/signin", json={"email": "bad"}, headers={"X-Request-ID": "req-123"}
        )

        assert response.status_code == 400
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_unhandled_exception_is_500_envelope(self, monkeypatch):
        """Unexpected failures do not leak internals."""
        from merchantauth.service.runtime import get_runtime

        async def explode(**kwargs):
            raise KeyError("boom")

        monkeypatch.setattr(get_runtime().auth, "signin", explode)
        get_runtime().rate_limiter.limits.clear()
        client = TestClient(app_module.app, raise_server_exceptions=False)

        response = client.post(
            "/api/auth/signin",
            json={
                "email": "a@b.com",
                "password": "password1",
                "latitude": 1.0,
                "longitude": 2.0,
                "location": "Here",
            },
        )

        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }
