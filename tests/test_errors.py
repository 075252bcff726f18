"""Tests for failure classification, redaction, and caller-facing error payloads."""

from __future__ import annotations

import pytest

from studycal.errors import (
    AuthError,
    CalendarError,
    ConflictError,
    FailureReason,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
    ProviderRequestError,
    RateLimitedError,
    StoreConflictError,
    TransientError,
    UnauthorizedError,
    build_structured_error,
    classify_failure,
    redact_secrets,
    sanitize_error_message,
)

pytestmark = pytest.mark.unit


class TestHierarchy:
    def test_everything_is_a_calendar_error(self):
        for exc in (
            AuthError("x"),
            UnauthorizedError("x"),
            RateLimitedError("x"),
            TransientError("x"),
            ConflictError("x"),
            StoreConflictError("k", 1, 2),
        ):
            assert isinstance(exc, CalendarError)

    def test_unauthorized_is_auth_error_without_reauth(self):
        exc = UnauthorizedError("401")
        assert isinstance(exc, AuthError)
        assert exc.reauth_required is False

    def test_store_conflict_message(self):
        exc = StoreConflictError("event:abc", 3, 4)
        assert exc.expected_version == 3
        assert exc.actual_version == 4
        assert "expected version 3" in str(exc)


class TestClassifyFailure:
    @pytest.mark.parametrize(
        ("exc", "reason"),
        [
            (TransientError("5xx"), FailureReason.transient),
            (RateLimitedError("429"), FailureReason.transient),
            (ConflictError("412"), FailureReason.conflict),
            (StoreConflictError("k", 1, 2), FailureReason.conflict),
            (InvalidArgumentError("bad"), FailureReason.invalid),
            (NotFoundError("gone"), FailureReason.invalid),
            (PermissionDeniedError("nope"), FailureReason.invalid),
            (AuthError("revoked", reauth_required=True), FailureReason.auth),
            (ProviderRequestError(status_code=418, message="teapot"), FailureReason.invalid),
            (ProviderRequestError(status_code=503, message="busy"), FailureReason.transient),
            (RuntimeError("unknown"), FailureReason.transient),
        ],
    )
    def test_reason(self, exc, reason):
        assert classify_failure(exc) is reason


class TestRedaction:
    def test_key_value_pairs(self):
        redacted = redact_secrets("refresh_token=1//abc&client_secret=xyz")
        assert "1//abc" not in redacted
        assert "xyz" not in redacted
        assert "refresh_token=[REDACTED]" in redacted

    def test_json_values(self):
        redacted = redact_secrets('{"access_token": "ya29.secret", "expires_in": 3599}')
        assert "ya29.secret" not in redacted
        assert "3599" in redacted

    def test_bearer_token(self):
        assert redact_secrets("Authorization: Bearer ya29.a0Af") == (
            "Authorization: Bearer [REDACTED]"
        )

    def test_sanitize_normalizes_and_truncates(self):
        message = sanitize_error_message("line one\n\n   line two " + "x" * 500)
        assert message.startswith("line one line two ")
        assert len(message) == 200


class TestBuildStructuredError:
    def test_reauth_payload(self):
        payload = build_structured_error(
            AuthError("invalid_grant", reauth_required=True),
            provider="google",
            account_id="acct-1",
        )
        assert payload["status"] == "error"
        assert payload["error_type"] == "AuthError"
        assert payload["reauth_required"] is True
        assert payload["retryable"] is False
        assert payload["provider"] == "google"
        assert payload["account_id"] == "acct-1"

    def test_rate_limit_payload_carries_retry_after(self):
        payload = build_structured_error(RateLimitedError("slow down", retry_after=12.0))
        assert payload["retryable"] is True
        assert payload["retry_after"] == 12.0
        assert "provider" not in payload

    def test_secrets_redacted(self):
        payload = build_structured_error(TransientError("failed with access_token=abc123"))
        assert "abc123" not in payload["error"]
