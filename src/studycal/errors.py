"""Error taxonomy shared by every calendar component.

All provider, auth, and sync failures derive from ``CalendarError`` so callers
can catch one base class.  Transient and rate-limit failures are retried inside
the remote client; everything else propagates to the caller untouched.
"""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Any


class CalendarError(RuntimeError):
    """Base error raised by calendar engine components."""


class AuthError(CalendarError):
    """Raised when no usable credential can be obtained for an account.

    ``reauth_required`` is true when the failure cannot be fixed without the
    user reconnecting their calendar (revoked or invalid refresh token).
    """

    def __init__(self, message: str, *, reauth_required: bool = False) -> None:
        self.reauth_required = reauth_required
        super().__init__(message)


class UnauthorizedError(AuthError):
    """Raised when the provider rejects an access token (HTTP 401)."""


class RateLimitedError(CalendarError):
    """Raised when the provider reports quota exhaustion (HTTP 429 or quota 403)."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class TransientError(CalendarError):
    """Network failure, timeout, or 5xx response; safe to retry."""


class ConflictError(CalendarError):
    """Remote state changed concurrently (version/etag mismatch)."""


class InvalidArgumentError(CalendarError):
    """Malformed request or time range."""


class NotFoundError(CalendarError):
    """The requested record or remote resource does not exist."""


class PermissionDeniedError(CalendarError):
    """The credential lacks access to the requested resource."""


class SyncTokenExpiredError(CalendarError):
    """Raised when an incremental sync token is expired or invalid; do a full sync."""


class ProviderRequestError(CalendarError):
    """Raised for provider responses that fit no other category."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Calendar provider request failed ({status_code}): {message}")


class ConfigError(CalendarError):
    """Raised when engine configuration is missing, malformed, or invalid."""


class StoreConflictError(CalendarError):
    """Raised by compare-and-set writes when the stored version moved on.

    Attributes:
        key: The record key involved in the conflict.
        expected_version: The version the caller read the record at.
        actual_version: The version found in the store (or None if absent).
    """

    def __init__(
        self,
        key: str,
        expected_version: int | None,
        actual_version: int | None,
        *,
        message: str | None = None,
    ) -> None:
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            message
            or (
                f"CAS conflict on {key!r}: expected version {expected_version}, "
                f"got {actual_version!r}"
            )
        )


class FailureReason(StrEnum):
    """Per-item failure classification used by batch results."""

    transient = "transient"
    conflict = "conflict"
    invalid = "invalid"
    auth = "auth"


def classify_failure(exc: BaseException) -> FailureReason:
    """Map an exception to the batch failure reason callers use to decide on retries."""
    if isinstance(exc, AuthError):
        return FailureReason.auth
    if isinstance(exc, ConflictError | StoreConflictError):
        return FailureReason.conflict
    if isinstance(
        exc, InvalidArgumentError | NotFoundError | PermissionDeniedError | ValueError | TypeError
    ):
        return FailureReason.invalid
    if isinstance(exc, ProviderRequestError):
        if exc.status_code >= 500:
            return FailureReason.transient
        return FailureReason.invalid
    return FailureReason.transient


_SECRET_KEYS = r"client_secret|refresh_token|access_token|token|code"


def redact_secrets(message: str) -> str:
    """Redact credential-looking values (key/value pairs and bearer tokens) from a message."""
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        rf"(?i)\b({_SECRET_KEYS})\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_SECRET_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    # key: value style pairs
    redacted = re.sub(
        rf"(?i)\b({_SECRET_KEYS})\s*:\s*([^\s,;'\"]+)",
        r"\1: [REDACTED]",
        redacted,
    )
    # bearer tokens
    redacted = re.sub(r"(?i)\bbearer\s+[A-Za-z0-9._\-]+", "Bearer [REDACTED]", redacted)
    return redacted


def sanitize_error_message(exc: BaseException | str, *, limit: int = 200) -> str:
    """Redact, normalize whitespace, and truncate an error for storage or display."""
    raw = exc if isinstance(exc, str) else str(exc)
    return " ".join(redact_secrets(raw).split())[:limit]


def build_structured_error(
    exc: Exception,
    *,
    provider: str | None = None,
    account_id: str | None = None,
    calendar_id: str | None = None,
) -> dict[str, Any]:
    """Build the caller-facing error payload.

    ``reauth_required`` is set for auth failures that need the user to reconnect.
    """
    payload: dict[str, Any] = {
        "status": "error",
        "error": sanitize_error_message(exc),
        "error_type": type(exc).__name__,
        "reauth_required": isinstance(exc, AuthError) and exc.reauth_required,
        "retryable": classify_failure(exc) is FailureReason.transient,
    }
    if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
        payload["retry_after"] = exc.retry_after
    if provider is not None:
        payload["provider"] = provider
    if account_id is not None:
        payload["account_id"] = account_id
    if calendar_id is not None:
        payload["calendar_id"] = calendar_id
    return payload
