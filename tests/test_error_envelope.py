"""Tests for the error envelope format and exception mapping.

Error responses have the shape:
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
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from eguard.api.error_handling import (
    _STATUS_TO_CODE,
    _error_response,
    register_exception_handlers,
)
from eguard.api.routes import _http_error
from eguard.api.schemas import (
    Envelope,
    ErrorBody,
    LoginRequest,
    UpdatePasswordRequest,
)
from eguard.service.errors import (
    AccessDeniedError,
    AccountBlockedError,
    BadCredentialsError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    TwoFactorRequiredError,
    UnauthenticatedError,
    ValidationError as ServiceValidationError,
)
from eguard.storage.errors import ConstraintViolation
from eguard.storage.models import AccountStatus


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_accepts_account_codes(self):
        for code in ("account_locked", "password_reset_required", "account_inactive", "account_withdrawn"):
            assert ErrorBody(code=code, message="blocked").code == code

    def test_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_status_codes_map_to_valid_codes(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")


class TestEnvelope:
    """Tests for the Envelope model."""

    def test_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_ids_are_unique(self):
        assert Envelope(status="ok").request_id != Envelope(status="ok").request_id

    def test_error_response_shape(self):
        response = _error_response(423, "locked", {"status": "LOCKED"}, code="account_locked")
        data = json.loads(response.body.decode())
        assert response.status_code == 423
        assert data["status"] == "error"
        assert data["error"] == {"code": "account_locked", "message": "locked", "details": {"status": "LOCKED"}}
        assert data["request_id"]


class TestRequestModels:
    """Email and password validation on request bodies."""

    def test_email_normalised(self):
        body = LoginRequest(email="  Kim@ACME.example ", password="x")
        assert body.email == "kim@acme.example"

    @pytest.mark.parametrize("email", ["no-at-sign", "a@b", "a b@acme.example", "@acme.example"])
    def test_bad_emails(self, email):
        with pytest.raises(ValidationError):
            LoginRequest(email=email, password="x")

    def test_new_password_length(self):
        with pytest.raises(ValidationError):
            UpdatePasswordRequest(email="kim@acme.example", password="old", new_password="short")
        with pytest.raises(ValidationError):
            UpdatePasswordRequest(email="kim@acme.example", password="old", new_password="x" * 129)
        UpdatePasswordRequest(email="kim@acme.example", password="old", new_password="x" * 8)


class _Body(BaseModel):
    value: int


def _app_raising(exc):
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    @app.post("/echo")
    async def echo(body: _Body):
        return {"value": body.value}

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionMapping:
    """Every service error renders as the envelope with its own status and code."""

    @pytest.mark.parametrize(
        "exc, status, code",
        [
            (ServiceValidationError("bad"), 400, "validation_error"),
            (UnauthenticatedError(), 401, "unauthorized"),
            (BadCredentialsError(), 401, "unauthorized"),
            (TwoFactorRequiredError(), 401, "two_factor_required"),
            (AccountBlockedError(AccountStatus.LOCKED), 423, "account_locked"),
            (AccountBlockedError(AccountStatus.PASSWORD_RESET), 409, "password_reset_required"),
            (AccountBlockedError(AccountStatus.SUSPENDED), 403, "account_inactive"),
            (AccountBlockedError(AccountStatus.WITHDRAWN), 403, "account_withdrawn"),
            (ForbiddenError("nope"), 403, "forbidden"),
            (NotFoundError("resource not found"), 404, "not_found"),
            (AccessDeniedError(), 404, "not_found"),
            (ServerError("broken"), 500, "server_error"),
            (ConstraintViolation.duplicate("employee", "email"), 409, "conflict"),
            (RuntimeError("unexpected"), 500, "server_error"),
        ],
    )
    def test_mapping(self, exc, status, code):
        response = _app_raising(exc).get("/boom")
        assert response.status_code == status
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == code

    def test_access_denied_indistinguishable_from_missing(self):
        denied = _app_raising(AccessDeniedError()).get("/boom").json()["error"]
        missing = _app_raising(NotFoundError("resource not found")).get("/boom").json()["error"]
        assert denied == missing

    def test_blocked_account_details(self):
        body = _app_raising(AccountBlockedError(AccountStatus.LOCKED)).get("/boom").json()
        assert body["error"]["details"] == {"status": "LOCKED"}

    def test_rate_limited_sets_retry_after(self):
        response = _app_raising(RateLimitedError("slow down", retry_after=97)).get("/boom")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "97"
        assert response.json()["error"]["details"] == {"retry_after_seconds": 97}

    def test_uncaught_message_is_generic(self):
        body = _app_raising(RuntimeError("secret internals")).get("/boom").json()
        assert "secret internals" not in body["error"]["message"]

    def test_http_error_helper(self):
        response = _app_raising(_http_error("unauthorized", "authentication required", 401)).get("/boom")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "authentication required"

    def test_request_validation_uses_envelope(self):
        response = _app_raising(RuntimeError()).post("/echo", json={"value": "not-a-number"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["loc"] == ["body", "value"]
