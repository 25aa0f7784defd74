"""Tests for the error envelope format and exception mapping.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import ValidationError

from onboarding.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from onboarding.api.schemas import Envelope, ErrorBody
from onboarding.logging import set_correlation_id
from onboarding.service.errors import (
    AccountLockedError,
    DependencyError,
    InvalidCredentialsError,
    NotVerifiedError,
)
from onboarding.storage.errors import ConstraintViolation, StoreUnavailableError


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid token")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_accepts_list_details(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_unknown_code_is_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="no")

    @pytest.mark.parametrize(
        "code",
        ["not_verified", "account_locked", "invalid_or_expired_code", "invalid_or_expired_token"],
    )
    def test_onboarding_codes_are_accepted(self, code):
        assert ErrorBody(code=code, message="m").code == code


class TestEnvelope:
    def test_status_must_be_ok_or_error(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_id_follows_correlation_id(self):
        set_correlation_id("req-123")
        assert Envelope(status="ok").request_id == "req-123"

    def test_status_code_mapping(self):
        assert _STATUS_TO_CODE[404] == "not_found"
        assert _error_code_for_status(422) == "validation_error"
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_body(self):
        response = _error_response(409, "email taken", code="conflict")
        body = json.loads(response.body)
        assert response.status_code == 409
        assert body["status"] == "error"
        assert body["error"] == {"code": "conflict", "message": "email taken", "details": None}
        assert body["request_id"]


def _app_raising(exc: Exception) -> TestClient:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionMapping:
    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (InvalidCredentialsError("invalid email or password"), 401, "invalid_credentials"),
            (NotVerifiedError("email not verified"), 403, "not_verified"),
            (AccountLockedError("locked"), 423, "account_locked"),
            (DependencyError("mail down"), 503, "dependency_unavailable"),
            (ConstraintViolation("email exists"), 409, "conflict"),
            (StoreUnavailableError("pool exhausted"), 503, "dependency_unavailable"),
            (HTTPException(status_code=404, detail="missing"), 404, "not_found"),
            (RuntimeError("kaboom"), 500, "server_error"),
        ],
    )
    def test_exception_becomes_envelope(self, exc, status, code):
        response = _app_raising(exc).get("/boom")
        assert response.status_code == status
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == code

    def test_locked_detail_is_passed_through(self):
        exc = AccountLockedError("locked", detail={"locked_until": "2024-01-15T12:15:00+00:00"})
        body = _app_raising(exc).get("/boom").json()
        assert body["error"]["details"] == {"locked_until": "2024-01-15T12:15:00+00:00"}

    def test_internal_messages_do_not_leak(self):
        body = _app_raising(RuntimeError("password=hunter2")).get("/boom").json()
        assert "hunter2" not in json.dumps(body)
