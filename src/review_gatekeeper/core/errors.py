"""
Error Taxonomy for Review Gatekeeper.

Every failure in the security pipeline is raised as a GatekeeperError
subclass and rendered into the standard error body:

    {"error": str, "code": ErrorCode, "timestamp": ISO8601, "retryAfter": int?}

The subclasses follow the failure categories clients need to tell apart:
malformed request, authentication, authorization, account state, abuse
detection, and upstream failure.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ErrorCode(str, Enum):
    """Machine-readable error codes returned in the ``code`` field."""

    # Malformed request
    TOKEN_MISSING = "TOKEN_MISSING"
    TOKEN_INVALID_FORMAT = "TOKEN_INVALID_FORMAT"
    MISSING_FIELDS = "MISSING_FIELDS"
    INVALID_ACTION_CODE = "INVALID_ACTION_CODE"
    USER_EXISTS = "USER_EXISTS"
    SIGNUP_REJECTED = "SIGNUP_REJECTED"

    # Authentication
    TOKEN_INVALID = "TOKEN_INVALID"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    TOKEN_CLAIMS_INVALID = "TOKEN_CLAIMS_INVALID"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    AUTH_FAILED = "AUTH_FAILED"
    AUTH_REQUIRED = "AUTH_REQUIRED"

    # Authorization
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"

    # Account state
    USER_DISABLED = "USER_DISABLED"
    ACCOUNT_SUSPENDED = "ACCOUNT_SUSPENDED"
    ACCOUNT_INACTIVE = "ACCOUNT_INACTIVE"
    IDENTITY_CONFLICT = "IDENTITY_CONFLICT"

    # Abuse detection
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    IP_BLACKLISTED = "IP_BLACKLISTED"
    BRUTE_FORCE_DETECTED = "BRUTE_FORCE_DETECTED"

    # Upstream / internal
    UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


ABUSE_CODES: frozenset[ErrorCode] = frozenset(
    {
        ErrorCode.RATE_LIMIT_EXCEEDED,
        ErrorCode.IP_BLACKLISTED,
        ErrorCode.BRUTE_FORCE_DETECTED,
    }
)


class Stage(str, Enum):
    """Pipeline stage at which a request was rejected."""

    IP_BLACKLIST_CHECK = "ip_blacklist_check"
    GLOBAL_RATE_LIMIT = "global_rate_limit"
    ROUTE_RATE_LIMIT = "route_rate_limit"
    SLOW_DOWN = "slow_down"
    TOKEN_VALIDATE = "token_validate"
    IDENTITY_RECONCILE = "identity_reconcile"
    ACCESS_CONTROL = "access_control"
    HANDLER = "handler"


class ErrorBody(BaseModel):
    """Standard JSON error body."""

    model_config = {"populate_by_name": True}

    error: str
    code: ErrorCode
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    retry_after: int | None = Field(default=None, alias="retryAfter")
    required: list[str] | None = None
    current: str | None = None
    details: dict[str, Any] | None = None


class GatekeeperError(Exception):
    """
    Base class for all pipeline failures.

    Attributes:
        message: Human-readable message returned as ``error``
        code: Machine-readable error code
        status_code: HTTP status
        retry_after: Seconds until the client may retry (abuse errors)
        stage: Pipeline stage that raised the error
        detail: Diagnostic detail, only rendered outside production
        record_failure: Whether the abuse tracker should count this failure
    """

    status_code: int = 500
    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    record_failure: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        status_code: int | None = None,
        retry_after: int | None = None,
        stage: Stage | None = None,
        detail: dict[str, Any] | None = None,
        record_failure: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        if record_failure is not None:
            self.record_failure = record_failure
        self.retry_after = retry_after
        self.stage = stage
        self.detail = detail or {}

    @property
    def is_abuse(self) -> bool:
        return self.code in ABUSE_CODES

    def to_body(self, *, include_details: bool = False) -> ErrorBody:
        """Render the error into the standard body."""
        return ErrorBody(
            error=self.message,
            code=self.code,
            retry_after=self.retry_after,
            details=(self.detail or None) if include_details else None,
        )


class MalformedRequestError(GatekeeperError):
    """Missing or ill-formed token or missing required fields."""

    status_code = 400
    code = ErrorCode.MISSING_FIELDS


class AuthenticationError(GatekeeperError):
    """The identity provider or claim checks rejected the token."""

    status_code = 401
    code = ErrorCode.AUTH_FAILED
    record_failure = True


class AuthorizationError(GatekeeperError):
    """Valid identity with insufficient role."""

    status_code = 403
    code = ErrorCode.INSUFFICIENT_PERMISSIONS

    def __init__(
        self,
        message: str = "Insufficient permissions",
        *,
        required: list[str] | None = None,
        current: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.required = required or []
        self.current = current

    def to_body(self, *, include_details: bool = False) -> ErrorBody:
        body = super().to_body(include_details=include_details)
        return body.model_copy(update={"required": self.required, "current": self.current})


class AccountStateError(GatekeeperError):
    """Disabled, suspended, inactive, or conflicting account."""

    status_code = 403
    code = ErrorCode.ACCOUNT_SUSPENDED


class AbuseDetectedError(GatekeeperError):
    """Rate limit, brute force, or blacklist rejection. Expected, not exceptional."""

    status_code = 429
    code = ErrorCode.RATE_LIMIT_EXCEEDED


class UpstreamError(GatekeeperError):
    """Identity provider or user store failure."""

    status_code = 500
    code = ErrorCode.UPSTREAM_ERROR
