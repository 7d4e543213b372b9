"""
Bearer Token Validation for Review Gatekeeper.

The "Who are you?" logic, first half: structural checks, provider
verification, and claim semantics.

Structural validation is cheap and runs first; a token that is not shaped
like a signed JWT never reaches the identity provider. After the provider
verifies the token, expiry, issued-at, audience, and issuer claims are
checked again locally.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

import jwt

from review_gatekeeper.core.context import ContextLogger
from review_gatekeeper.core.errors import (
    AccountStateError,
    AuthenticationError,
    ErrorCode,
    GatekeeperError,
    MalformedRequestError,
    Stage,
    UpstreamError,
)
from review_gatekeeper.engines.identity_provider import (
    IdentityProvider,
    ProviderError,
    ProviderErrorKind,
    VerifiedToken,
)

logger = ContextLogger(logging.getLogger(__name__))

BEARER_SCHEME = "bearer"
# Base64url of '{"' - every JSON-object JOSE header starts with it.
SIGNED_TOKEN_PREFIX = "eyJ"
DEFAULT_CLOCK_SKEW = 60


def _invalid_format(message: str) -> MalformedRequestError:
    return MalformedRequestError(
        message,
        code=ErrorCode.TOKEN_INVALID_FORMAT,
        status_code=401,
        stage=Stage.TOKEN_VALIDATE,
        record_failure=True,
    )


def extract_bearer(authorization: str | None) -> str:
    """
    Take the token out of an ``Authorization: Bearer <token>`` header.

    Raises:
        MalformedRequestError: TOKEN_MISSING when the header is absent or
            empty, TOKEN_INVALID_FORMAT when the scheme is not Bearer
    """
    if authorization is None or not authorization.strip():
        raise MalformedRequestError(
            "No token provided",
            code=ErrorCode.TOKEN_MISSING,
            status_code=401,
            stage=Stage.TOKEN_VALIDATE,
        )

    scheme, _, token = authorization.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != BEARER_SCHEME or not token:
        raise _invalid_format("Authorization header must use the Bearer scheme")
    return token


def check_structure(token: str) -> dict[str, Any]:
    """
    Validate that a token is shaped like a signed JWT.

    Returns:
        The unverified JOSE header

    Raises:
        MalformedRequestError: TOKEN_INVALID_FORMAT (401)
    """
    if not token:
        raise _invalid_format("Token is empty")

    segments = token.split(".")
    if len(segments) != 3 or not all(segments):
        raise _invalid_format("Token must have three non-empty segments")

    if not token.startswith(SIGNED_TOKEN_PREFIX):
        raise _invalid_format("Token header is not a JSON object")

    try:
        header = jwt.get_unverified_header(token)
    except jwt.DecodeError as e:
        raise _invalid_format(f"Token header could not be decoded: {e}") from e

    if not header.get("alg"):
        raise _invalid_format("Token header has no signing algorithm")
    return header


_PROVIDER_ERRORS: dict[ProviderErrorKind, tuple[type[GatekeeperError], ErrorCode, str]] = {
    ProviderErrorKind.EXPIRED: (AuthenticationError, ErrorCode.TOKEN_EXPIRED, "Token has expired"),
    ProviderErrorKind.REVOKED: (AuthenticationError, ErrorCode.TOKEN_REVOKED, "Token has been revoked"),
    ProviderErrorKind.MALFORMED: (AuthenticationError, ErrorCode.TOKEN_INVALID, "Invalid token"),
    ProviderErrorKind.ARGUMENT_ERROR: (AuthenticationError, ErrorCode.TOKEN_INVALID, "Invalid token"),
    ProviderErrorKind.USER_NOT_FOUND: (AuthenticationError, ErrorCode.USER_NOT_FOUND, "User not found"),
    ProviderErrorKind.USER_DISABLED: (AccountStateError, ErrorCode.USER_DISABLED, "User account is disabled"),
    ProviderErrorKind.UNAVAILABLE: (UpstreamError, ErrorCode.UPSTREAM_ERROR, "Identity provider unavailable"),
    ProviderErrorKind.EMAIL_EXISTS: (MalformedRequestError, ErrorCode.USER_EXISTS, "Email already registered"),
}


def translate_provider_error(error: ProviderError, stage: Stage = Stage.TOKEN_VALIDATE) -> GatekeeperError:
    """Map a provider failure onto the error taxonomy."""
    error_cls, code, message = _PROVIDER_ERRORS[error.kind]
    return error_cls(
        message,
        code=code,
        stage=stage,
        detail={"provider_kind": error.kind.value, "provider_message": error.message},
    )


class TokenValidator:
    """
    Validates bearer tokens against an identity provider.

    Pure verification: no store is touched.

    Usage:
        validator = TokenValidator(provider, timeout=5.0)
        verified = await validator.validate(token)
    """

    def __init__(
        self,
        provider: IdentityProvider,
        *,
        clock_skew: int = DEFAULT_CLOCK_SKEW,
        timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Args:
            provider: Identity provider adapter
            clock_skew: Seconds ``iat`` may lie in the future
            timeout: Bound on the provider round-trip in seconds
            clock: Time source
        """
        self._provider = provider
        self._clock_skew = clock_skew
        self._timeout = timeout
        self._clock = clock

    async def validate(self, token: str) -> VerifiedToken:
        """
        Structure check, provider verification with revocation, claim checks.

        Raises:
            MalformedRequestError: TOKEN_INVALID_FORMAT
            AuthenticationError: TOKEN_EXPIRED, TOKEN_REVOKED, TOKEN_INVALID,
                USER_NOT_FOUND, TOKEN_CLAIMS_INVALID
            AccountStateError: USER_DISABLED
            UpstreamError: UPSTREAM_TIMEOUT, UPSTREAM_ERROR
        """
        check_structure(token)

        try:
            verified = await asyncio.wait_for(
                self._provider.verify_token(token, check_revoked=True),
                timeout=self._timeout,
            )
        except ProviderError as e:
            raise translate_provider_error(e) from e
        except asyncio.TimeoutError as e:
            logger.error("Identity provider verification timed out after %.1fs", self._timeout)
            raise UpstreamError(
                "Identity provider timed out",
                code=ErrorCode.UPSTREAM_TIMEOUT,
                stage=Stage.TOKEN_VALIDATE,
            ) from e

        self.check_claims(verified.claims)
        return verified

    def check_claims(self, claims: dict[str, Any]) -> None:
        """
        Claim semantics checked after the provider has verified the token.

        Raises:
            AuthenticationError: TOKEN_CLAIMS_INVALID
        """
        now = self._clock()

        exp = claims.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            raise self._claims_invalid("Token has no valid expiration")
        if exp <= now:
            raise self._claims_invalid("Token has expired")

        iat = claims.get("iat")
        if not isinstance(iat, (int, float)) or isinstance(iat, bool):
            raise self._claims_invalid("Token has no valid issued-at time")
        if iat > now + self._clock_skew:
            raise self._claims_invalid("Token issued in the future")

        if not claims.get("aud"):
            raise self._claims_invalid("Token has no audience")
        if not claims.get("iss"):
            raise self._claims_invalid("Token has no issuer")

    @staticmethod
    def _claims_invalid(message: str) -> AuthenticationError:
        return AuthenticationError(
            message,
            code=ErrorCode.TOKEN_CLAIMS_INVALID,
            stage=Stage.TOKEN_VALIDATE,
        )
