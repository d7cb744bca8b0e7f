"""Tests for the error envelope format and error handling.

Error responses conform to the stable API envelope:
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
from pydantic import ValidationError

from stageflow.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
)
from stageflow.api.schemas import Envelope, ErrorBody
from stageflow.logging import sanitize_error_message, set_correlation_id
from stageflow.service.errors import (
    AggregationDropped,
    AlreadyRunning,
    ConfigError,
    DomainError,
    NotFoundError,
    StageCancelled,
    TransportError,
)
from stageflow.service.result import StageResult


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        """ErrorBody requires code and message fields."""
        error = ErrorBody(code="not_found", message="session not found")
        assert error.code == "not_found"
        assert error.message == "session not found"
        assert error.details is None

    def test_error_body_with_details_list(self):
        """ErrorBody accepts list details."""
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "query"}, {"field": "template"}],
        )
        assert len(error.details) == 2

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")

    def test_unknown_code_rejected(self):
        """Only stable codes are allowed in the envelope."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_every_service_error_code_is_valid(self):
        for exc_cls in (
            NotFoundError,
            ConfigError,
            TransportError,
            DomainError,
            AlreadyRunning,
            StageCancelled,
            AggregationDropped,
        ):
            ErrorBody(code=exc_cls.error_code, message="x")


class TestEnvelope:
    def test_error_envelope_shape(self):
        envelope = Envelope(status="error", error=ErrorBody(code="conflict", message="dup"))
        dumped = envelope.model_dump()
        assert dumped["status"] == "error"
        assert dumped["data"] is None
        assert dumped["error"]["code"] == "conflict"
        assert dumped["request_id"]

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    def test_known_statuses(self):
        assert _error_code_for_status(404) == "not_found"
        assert _error_code_for_status(502) == "transport_error"
        assert _STATUS_TO_CODE[409] == "conflict"

    def test_unknown_status_falls_back(self):
        assert _error_code_for_status(418) == "server_error"


class TestErrorResponse:
    def test_uses_correlation_id(self):
        set_correlation_id("req-abc")
        response = error_response(409, "already running", {"node_id": "ai_search"}, code="already_running")
        body = json.loads(response.body)
        assert response.status_code == 409
        assert body["request_id"] == "req-abc"
        assert body["error"]["code"] == "already_running"
        assert body["error"]["details"] == {"node_id": "ai_search"}

    def test_message_is_sanitized(self):
        response = error_response(500, "failed at /var/lib/secret.db")
        body = json.loads(response.body)
        assert "/var/lib" not in body["error"]["message"]


class TestSanitize:
    def test_strips_credentials(self):
        cleaned = sanitize_error_message("upstream said api_key=abcdefgh12345678")
        assert "abcdefgh12345678" not in cleaned

    def test_plain_message_untouched(self):
        assert sanitize_error_message("missing required input 'query'") == (
            "missing required input 'query'"
        )

    def test_empty_message(self):
        assert sanitize_error_message("") == "An error occurred"


class TestServiceErrors:
    """Failure kinds carry stable codes and retry semantics."""

    def test_only_transport_failures_are_retryable(self):
        assert TransportError("x").retryable
        assert not DomainError("x").retryable
        assert not StageCancelled("x").retryable

    def test_status_codes(self):
        assert DomainError("x").status_code == 422
        assert AlreadyRunning("x").status_code == 409
        assert TransportError("x").status_code == 502

    def test_failed_result_carries_code(self):
        result = StageResult.failure(DomainError("rejected"), attempts=1)
        assert not result.ok
        assert result.error_code == "domain_error"
        assert result.to_dict()["error"]["code"] == "domain_error"

    def test_success_result_has_no_code(self):
        result = StageResult.success({"answer": "x"}, attempts=2)
        assert result.ok
        assert result.error_code is None
