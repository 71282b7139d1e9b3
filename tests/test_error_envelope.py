"""Tests for the error envelope format and error handling.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<correlation id>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from filehaven import app as app_module
from filehaven.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
)
from filehaven.api.schemas import Envelope, ErrorBody
from filehaven.logging import correlation_id_var


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.message == "Invalid credentials"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")

    def test_error_body_rejects_unknown_code(self):
        """Only the stable code set is accepted."""
        with pytest.raises(ValidationError):
            ErrorBody(code="rate_limited", message="Too many requests")


class TestEnvelope:
    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"user_id": "123"})

        assert envelope.data == {"user_id": "123"}
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        token = correlation_id_var.set(None)
        try:
            envelope = Envelope(status="ok")
        finally:
            correlation_id_var.reset(token)

        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_request_id_follows_correlation_id(self):
        token = correlation_id_var.set("corr-42")
        try:
            envelope = Envelope(status="ok")
        finally:
            correlation_id_var.reset(token)

        assert envelope.request_id == "corr-42"

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status_code,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_unknown_statuses_fall_back_by_class(self):
        assert _error_code_for_status(418) == "validation_error"
        assert _error_code_for_status(503) == "server_error"

    def test_mapping_uses_only_stable_codes(self):
        assert set(_STATUS_TO_CODE.values()) == {
            "unauthorized",
            "forbidden",
            "not_found",
            "validation_error",
            "conflict",
            "server_error",
        }


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = error_response(401, "Invalid credentials")

        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["details"] is None
        assert data["request_id"]

    def test_error_response_custom_code(self):
        response = error_response(400, "Custom error", code="conflict")

        assert json.loads(response.body.decode())["error"]["code"] == "conflict"


class TestHandlers:
    def test_unknown_route_is_enveloped(self, api_headers):
        client = TestClient(app_module.app)

        response = client.get("/api/nope", headers=api_headers)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_query_validation_is_400(self, api_headers):
        client = TestClient(app_module.app)

        response = client.get("/api/users", params={"limit": 0}, headers=api_headers)

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["loc"] == ["query", "limit"]
