"""
Identity Provider Boundary for Review Gatekeeper.

The external identity provider issues and verifies bearer tokens and owns
the canonical credential. This module defines the narrow interface the
gatekeeper consumes and a closed error type: every provider failure is
translated into ``ProviderError`` at this boundary, so no provider-specific
error shape leaks into the pipeline.

``JWTIdentityProvider`` is an adapter for providers that issue signed JWTs
verifiable with a shared secret, a static public key, or a JWKS endpoint.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from enum import Enum
from typing import Any, Protocol, runtime_checkable

import jwt
from jwt import PyJWKClient
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ProviderErrorKind(str, Enum):
    """Distinguishable causes of a provider failure."""

    EXPIRED = "expired"
    REVOKED = "revoked"
    MALFORMED = "malformed"
    ARGUMENT_ERROR = "argument_error"
    USER_NOT_FOUND = "user_not_found"
    USER_DISABLED = "user_disabled"
    EMAIL_EXISTS = "email_exists"
    UNAVAILABLE = "unavailable"


class ProviderError(Exception):
    """Failure reported by the identity provider."""

    def __init__(self, kind: ProviderErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value


class VerifiedToken(BaseModel):
    """Claims of a token the provider has verified."""

    model_config = {"frozen": True}

    external_id: str
    email: str | None = None
    email_verified: bool = False
    claims: dict[str, Any] = Field(default_factory=dict)

    @property
    def expires_at(self) -> Any:
        return self.claims.get("exp")

    @property
    def issued_at(self) -> Any:
        return self.claims.get("iat")

    @property
    def audience(self) -> Any:
        return self.claims.get("aud")

    @property
    def issuer(self) -> Any:
        return self.claims.get("iss")


class ExternalUser(BaseModel):
    """Provider-side account."""

    model_config = {"frozen": True}

    external_id: str
    email: str | None = None
    email_verified: bool = False
    disabled: bool = False
    display_name: str | None = None


@runtime_checkable
class IdentityProvider(Protocol):
    """
    Interface to the external identity provider.

    Every method raises ``ProviderError`` on failure.
    """

    async def verify_token(self, token: str, check_revoked: bool = True) -> VerifiedToken:
        ...

    async def get_user(self, external_id: str) -> ExternalUser:
        ...

    async def create_user(
        self, email: str, password: str, display_name: str | None = None
    ) -> ExternalUser:
        ...

    async def delete_user(self, external_id: str) -> None:
        ...

    async def create_custom_token(
        self, external_id: str, claims: dict[str, Any] | None = None
    ) -> str:
        ...

    async def revoke_refresh_tokens(self, external_id: str) -> None:
        ...

    async def generate_password_reset_link(self, email: str) -> str:
        ...

    async def generate_email_verification_link(self, email: str) -> str:
        ...

    async def confirm_password_reset(self, code: str, new_password: str) -> str:
        ...

    async def apply_action_code(self, code: str) -> str:
        ...


class JWTIdentityProvider:
    """
    Identity provider adapter for signed JWT bearer tokens.

    Verifies signature, expiry, audience, and issuer with PyJWT. Revocation
    follows the "tokens valid after" model: ``revoke_refresh_tokens`` records
    an instant, and any token issued before it is rejected when
    ``check_revoked`` is requested.

    Password and email-action flows need the provider's account backend and
    are not available through a pure JWT issuer; they raise
    ``ProviderError(ARGUMENT_ERROR)``.

    Usage:
        provider = JWTIdentityProvider(
            key="shared-secret",
            audience="review-platform",
            issuer="https://issuer.example.com",
        )
        verified = await provider.verify_token(token)

        # JWKS-backed
        provider = JWTIdentityProvider(
            jwks_url="https://issuer.example.com/.well-known/jwks.json",
            algorithms=("RS256",),
            audience="review-platform",
            issuer="https://issuer.example.com",
        )
    """

    def __init__(
        self,
        *,
        audience: str,
        issuer: str,
        key: str | bytes | None = None,
        jwks_url: str | None = None,
        algorithms: tuple[str, ...] = ("HS256",),
        signing_key: str | bytes | None = None,
        custom_token_ttl: int = 3600,
        leeway: int = 0,
    ) -> None:
        """
        Args:
            audience: Expected ``aud`` claim
            issuer: Expected ``iss`` claim
            key: Verification key (shared secret or PEM public key)
            jwks_url: JWKS endpoint, used when ``key`` is not given
            algorithms: Accepted signing algorithms
            signing_key: Key for ``create_custom_token`` (defaults to ``key``)
            custom_token_ttl: Lifetime of custom tokens in seconds
            leeway: Clock leeway for exp/nbf/iat checks in seconds

        Raises:
            ValueError: If neither key nor jwks_url is configured
        """
        if key is None and jwks_url is None:
            raise ValueError("JWTIdentityProvider requires either key or jwks_url")

        self._audience = audience
        self._issuer = issuer
        self._key = key
        self._jwks_client = PyJWKClient(jwks_url) if key is None and jwks_url else None
        self._algorithms = list(algorithms)
        self._signing_key = signing_key if signing_key is not None else key
        self._custom_token_ttl = custom_token_ttl
        self._leeway = leeway

        self._lock = threading.RLock()
        self._users: dict[str, ExternalUser] = {}
        self._valid_after: dict[str, float] = {}
        self._disabled: set[str] = set()

    async def verify_token(self, token: str, check_revoked: bool = True) -> VerifiedToken:
        key = await self._verification_key(token)
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=self._algorithms,
                audience=self._audience,
                issuer=self._issuer,
                leeway=self._leeway,
                # iat skew is judged by the token validator
                options={"require": ["exp", "iat", "sub"], "verify_iat": False},
            )
        except jwt.ExpiredSignatureError as e:
            raise ProviderError(ProviderErrorKind.EXPIRED, "Token has expired") from e
        except jwt.DecodeError as e:
            raise ProviderError(ProviderErrorKind.MALFORMED, f"Token could not be decoded: {e}") from e
        except jwt.InvalidTokenError as e:
            raise ProviderError(ProviderErrorKind.ARGUMENT_ERROR, f"Token rejected: {e}") from e

        external_id = str(claims["sub"])
        with self._lock:
            if check_revoked:
                if external_id in self._disabled:
                    raise ProviderError(ProviderErrorKind.USER_DISABLED, "User account is disabled")
                valid_after = self._valid_after.get(external_id)
                if valid_after is not None and float(claims["iat"]) < valid_after:
                    raise ProviderError(ProviderErrorKind.REVOKED, "Token has been revoked")

            verified = VerifiedToken(
                external_id=external_id,
                email=claims.get("email"),
                email_verified=bool(claims.get("email_verified", False)),
                claims=claims,
            )
            self._users[external_id] = ExternalUser(
                external_id=external_id,
                email=verified.email,
                email_verified=verified.email_verified,
                disabled=external_id in self._disabled,
                display_name=claims.get("name"),
            )
        return verified

    async def get_user(self, external_id: str) -> ExternalUser:
        with self._lock:
            user = self._users.get(external_id)
        if user is None:
            raise ProviderError(ProviderErrorKind.USER_NOT_FOUND, f"No user {external_id!r}")
        return user

    async def create_user(
        self, email: str, password: str, display_name: str | None = None
    ) -> ExternalUser:
        raise ProviderError(
            ProviderErrorKind.ARGUMENT_ERROR, "Account creation is not available for JWT issuers"
        )

    async def delete_user(self, external_id: str) -> None:
        with self._lock:
            if self._users.pop(external_id, None) is None:
                raise ProviderError(ProviderErrorKind.USER_NOT_FOUND, f"No user {external_id!r}")
            self._valid_after[external_id] = time.time()

    async def create_custom_token(
        self, external_id: str, claims: dict[str, Any] | None = None
    ) -> str:
        if self._signing_key is None:
            raise ProviderError(
                ProviderErrorKind.ARGUMENT_ERROR, "No signing key configured for custom tokens"
            )
        now = int(time.time())
        payload = {
            **(claims or {}),
            "sub": external_id,
            "aud": self._audience,
            "iss": self._issuer,
            "iat": now,
            "exp": now + self._custom_token_ttl,
        }
        return jwt.encode(payload, self._signing_key, algorithm=self._algorithms[0])

    async def revoke_refresh_tokens(self, external_id: str) -> None:
        # iat has one-second resolution; tokens minted in the same second stay valid
        with self._lock:
            self._valid_after[external_id] = float(int(time.time()))

    def set_user_disabled(self, external_id: str, disabled: bool = True) -> None:
        """Mirror an account-disable decision made at the provider."""
        with self._lock:
            if disabled:
                self._disabled.add(external_id)
            else:
                self._disabled.discard(external_id)

    async def generate_password_reset_link(self, email: str) -> str:
        raise ProviderError(
            ProviderErrorKind.ARGUMENT_ERROR, "Password reset is not available for JWT issuers"
        )

    async def generate_email_verification_link(self, email: str) -> str:
        raise ProviderError(
            ProviderErrorKind.ARGUMENT_ERROR, "Email verification is not available for JWT issuers"
        )

    async def confirm_password_reset(self, code: str, new_password: str) -> str:
        raise ProviderError(
            ProviderErrorKind.ARGUMENT_ERROR, "Password reset is not available for JWT issuers"
        )

    async def apply_action_code(self, code: str) -> str:
        raise ProviderError(
            ProviderErrorKind.ARGUMENT_ERROR, "Action codes are not available for JWT issuers"
        )

    async def _verification_key(self, token: str) -> Any:
        if self._jwks_client is None:
            return self._key
        try:
            signing_key = await asyncio.to_thread(
                self._jwks_client.get_signing_key_from_jwt, token
            )
        except jwt.PyJWKClientError as e:
            logger.warning("JWKS lookup failed: %s", e)
            raise ProviderError(ProviderErrorKind.UNAVAILABLE, "Signing keys unavailable") from e
        except jwt.DecodeError as e:
            raise ProviderError(ProviderErrorKind.MALFORMED, f"Token could not be decoded: {e}") from e
        return signing_key.key
