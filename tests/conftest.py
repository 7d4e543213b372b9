"""Shared fixtures and test doubles."""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import Any

import jwt
import pytest

from review_gatekeeper.audit import MemoryAuditSink, SecurityAuditor
from review_gatekeeper.core.config import SecuritySettings
from review_gatekeeper.engines.identity_provider import (
    ExternalUser,
    JWTIdentityProvider,
    ProviderError,
    ProviderErrorKind,
    VerifiedToken,
)
from review_gatekeeper.engines.user_store import InMemoryUserStore

SECRET = "review-gatekeeper-test-secret-0123456789"
AUDIENCE = "review-platform"
ISSUER = "https://issuer.test"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float | None = None) -> None:
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_token(
    sub: str = "idp-user-1",
    *,
    email: str | None = "owner@example.com",
    secret: str = SECRET,
    audience: str | None = AUDIENCE,
    issuer: str | None = ISSUER,
    iat: int | None = None,
    exp_in: int = 3600,
    **extra: Any,
) -> str:
    """Signed HS256 token with the claims the provider expects."""
    now = int(time.time()) if iat is None else iat
    payload: dict[str, Any] = {"sub": sub, "iat": now, "exp": now + exp_in, **extra}
    if audience is not None:
        payload["aud"] = audience
    if issuer is not None:
        payload["iss"] = issuer
    if email is not None:
        payload["email"] = email
    return jwt.encode(payload, secret, algorithm="HS256")


class CountingProvider(JWTIdentityProvider):
    """JWT provider that counts verification round-trips."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(key=SECRET, audience=AUDIENCE, issuer=ISSUER, **kwargs)
        self.verify_calls = 0

    async def verify_token(self, token: str, check_revoked: bool = True) -> VerifiedToken:
        self.verify_calls += 1
        return await super().verify_token(token, check_revoked)


class ScriptedProvider:
    """Provider double with canned results per token."""

    def __init__(self) -> None:
        self.results: dict[str, VerifiedToken | ProviderError] = {}
        self.verify_calls = 0
        self.delay = 0.0
        self.revoked: list[str] = []
        self.reset_requests: list[str] = []
        self.reset_error: ProviderError | None = None
        self.created: list[str] = []
        self.create_error: ProviderError | None = None
        self.deleted: list[str] = []
        self.verification_requests: list[str] = []

    def add(self, token: str, result: VerifiedToken | ProviderError) -> None:
        self.results[token] = result

    async def verify_token(self, token: str, check_revoked: bool = True) -> VerifiedToken:
        self.verify_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results.get(token)
        if result is None:
            raise ProviderError(ProviderErrorKind.MALFORMED, "unknown token")
        if isinstance(result, ProviderError):
            raise result
        return result

    async def get_user(self, external_id: str) -> ExternalUser:
        raise ProviderError(ProviderErrorKind.USER_NOT_FOUND)

    async def create_user(self, email: str, password: str, display_name: str | None = None) -> ExternalUser:
        if self.create_error is not None:
            raise self.create_error
        self.created.append(email)
        return ExternalUser(external_id=f"idp-{email}", email=email)

    async def delete_user(self, external_id: str) -> None:
        self.deleted.append(external_id)

    async def create_custom_token(self, external_id: str, claims: dict[str, Any] | None = None) -> str:
        return f"custom-{external_id}"

    async def revoke_refresh_tokens(self, external_id: str) -> None:
        self.revoked.append(external_id)

    async def generate_password_reset_link(self, email: str) -> str:
        self.reset_requests.append(email)
        if self.reset_error is not None:
            raise self.reset_error
        return f"https://issuer.test/reset?email={email}"

    async def generate_email_verification_link(self, email: str) -> str:
        self.verification_requests.append(email)
        return f"https://issuer.test/verify?email={email}"

    async def confirm_password_reset(self, code: str, new_password: str) -> str:
        if code != "good-code":
            raise ProviderError(ProviderErrorKind.EXPIRED, "code expired")
        return "owner@example.com"

    async def apply_action_code(self, code: str) -> str:
        if code != "good-code":
            raise ProviderError(ProviderErrorKind.ARGUMENT_ERROR, "bad code")
        return "owner@example.com"


def verified(
    external_id: str = "idp-user-1",
    email: str | None = "owner@example.com",
    **claims: Any,
) -> VerifiedToken:
    """VerifiedToken with valid claims."""
    now = int(time.time())
    base = {"sub": external_id, "iat": now, "exp": now + 3600, "aud": AUDIENCE, "iss": ISSUER}
    return VerifiedToken(external_id=external_id, email=email, claims={**base, **claims})


def make_settings(**overrides: Any) -> SecuritySettings:
    """Development settings with every protection on unless overridden."""
    base = SecuritySettings.for_environment("test")
    defaults: dict[str, Any] = {
        "strict_rate_limit": True,
        "brute_force_protection": True,
        "ip_blacklist": True,
        "trust_proxy": True,
    }
    return replace(base, **{**defaults, **overrides})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def audit_sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def auditor(audit_sink: MemoryAuditSink) -> SecurityAuditor:
    return SecurityAuditor(sinks=[audit_sink])


@pytest.fixture
def store() -> InMemoryUserStore:
    return InMemoryUserStore()


@pytest.fixture
def provider() -> CountingProvider:
    return CountingProvider()
