"""Tests for the error envelope and the domain error to HTTP mapping.

Every failure leaves the API as:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from pydantic import ValidationError

from fleetauth.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, _error_response
from fleetauth.api.schemas import Envelope, ErrorBody
from fleetauth.service.errors import (
    AccountLockedError,
    AccountNotActiveError,
    CodeExpiredError,
    CompanySuspendedError,
    ConflictError,
    InfrastructureError,
    InvalidCredentialsError,
    NotFoundError,
    PasswordPolicyViolationError,
    PrivilegeEscalationDeniedError,
    TenantAccessDeniedError,
    TokenInvalidError,
)


class TestErrorBody:
    def test_known_code(self):
        error = ErrorBody(code="account_locked", message="Locked", details={"retry_after_seconds": 30})
        assert error.model_dump() == {
            "code": "account_locked",
            "message": "Locked",
            "details": {"retry_after_seconds": 30},
        }

    def test_unknown_code_rejected(self):
        """Codes outside the stable set never reach a client."""
        with pytest.raises(ValidationError):
            ErrorBody(code="rate_limited", message="Too many requests")

    def test_message_required(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_request_id_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_status_restricted(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestStatusMapping:
    def test_known_statuses(self):
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(423) == "account_locked"
        assert _error_code_for_status(503) == "service_unavailable"

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_mapped_codes_are_valid_envelope_codes(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")


class TestDomainErrors:
    """Each domain error carries the status and code the envelope exposes."""

    @pytest.mark.parametrize(
        "exc, status, code",
        [
            (PasswordPolicyViolationError(["too short"]), 400, "validation_error"),
            (InvalidCredentialsError(), 401, "unauthorized"),
            (TokenInvalidError("expired"), 401, "unauthorized"),
            (AccountNotActiveError(), 403, "account_inactive"),
            (CompanySuspendedError(), 403, "company_suspended"),
            (TenantAccessDeniedError(), 403, "forbidden"),
            (PrivilegeEscalationDeniedError("no", actor_role="ADMIN", target_role="OWNER"), 403, "forbidden"),
            (CodeExpiredError(), 400, "invalid_code"),
            (NotFoundError("User not found"), 404, "not_found"),
            (ConflictError("Email already registered"), 409, "conflict"),
            (AccountLockedError(120), 423, "account_locked"),
            (InfrastructureError(), 503, "service_unavailable"),
        ],
    )
    def test_status_and_code(self, exc, status, code):
        assert exc.status_code == status
        assert exc.error_code == code
        ErrorBody(code=exc.error_code, message=exc.message)


class TestErrorResponse:
    def test_body_shape(self):
        response = _error_response(423, "Locked", {"retry_after_seconds": 5}, headers={"Retry-After": "5"})
        data = json.loads(response.body.decode())
        assert response.status_code == 423
        assert response.headers["Retry-After"] == "5"
        assert data["status"] == "error"
        assert data["error"] == {
            "code": "account_locked",
            "message": "Locked",
            "details": {"retry_after_seconds": 5},
        }
        assert data["data"] is None
        assert data["request_id"]

    def test_list_details(self):
        response = _error_response(400, "Invalid request", [{"loc": ["body", "email"]}])
        data = json.loads(response.body.decode())
        assert data["error"]["details"] == [{"loc": ["body", "email"]}]
