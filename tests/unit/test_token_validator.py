"""Unit tests for bearer token validation."""

import time

import pytest

from conftest import AUDIENCE, ISSUER, FakeClock, ScriptedProvider, make_token, verified
from review_gatekeeper.core.errors import (
    AccountStateError,
    AuthenticationError,
    ErrorCode,
    GatekeeperError,
    MalformedRequestError,
    Stage,
    UpstreamError,
)
from review_gatekeeper.engines.identity_provider import ProviderError, ProviderErrorKind
from review_gatekeeper.engines.token_validator import (
    TokenValidator,
    check_structure,
    extract_bearer,
    translate_provider_error,
)


class TestExtractBearer:
    """Tests for Authorization header parsing."""

    def test_extracts_token(self) -> None:
        assert extract_bearer("Bearer abc.def.ghi") == "abc.def.ghi"

    def test_scheme_is_case_insensitive(self) -> None:
        assert extract_bearer("bearer   abc.def.ghi  ") == "abc.def.ghi"

    @pytest.mark.parametrize("header", [None, "", "   "])
    def test_missing_header(self, header) -> None:
        with pytest.raises(MalformedRequestError) as exc:
            extract_bearer(header)

        assert exc.value.code == ErrorCode.TOKEN_MISSING
        assert exc.value.status_code == 401
        assert exc.value.record_failure is False

    @pytest.mark.parametrize("header", ["Basic dXNlcjpwYXNz", "Bearer", "Bearer    ", "Token abc"])
    def test_wrong_scheme(self, header) -> None:
        with pytest.raises(MalformedRequestError) as exc:
            extract_bearer(header)

        assert exc.value.code == ErrorCode.TOKEN_INVALID_FORMAT
        assert exc.value.status_code == 401
        assert exc.value.record_failure is True


class TestCheckStructure:
    """Tests for structural JWT checks."""

    def test_accepts_signed_jwt(self) -> None:
        header = check_structure(make_token())

        assert header["alg"] == "HS256"

    @pytest.mark.parametrize(
        "token",
        [
            "",
            "not.a.jwt",
            "onlyonesegment",
            "eyJhbGciOiJIUzI1NiJ9.payload",
            "eyJhbGciOiJIUzI1NiJ9..signature",
            "eyJhbGciOiJIUzI1NiJ9.a.b.c",
            "eyJ!!!.payload.signature",
        ],
    )
    def test_rejects_malformed(self, token) -> None:
        with pytest.raises(MalformedRequestError) as exc:
            check_structure(token)

        assert exc.value.code == ErrorCode.TOKEN_INVALID_FORMAT
        assert exc.value.stage == Stage.TOKEN_VALIDATE

    def test_rejects_header_without_alg(self) -> None:
        # base64url of {"typ":"JWT"}
        token = "eyJ0eXAiOiJKV1QifQ.eyJzdWIiOiJ4In0.c2ln"

        with pytest.raises(MalformedRequestError) as exc:
            check_structure(token)

        assert exc.value.code == ErrorCode.TOKEN_INVALID_FORMAT


class TestTokenValidator:
    """Tests for TokenValidator.validate."""

    @pytest.mark.asyncio
    async def test_valid_token(self, provider) -> None:
        validator = TokenValidator(provider)

        result = await validator.validate(make_token("idp-42", email="a@example.com"))

        assert result.external_id == "idp-42"
        assert result.email == "a@example.com"
        assert result.audience == AUDIENCE
        assert result.issuer == ISSUER

    @pytest.mark.asyncio
    async def test_malformed_token_never_reaches_provider(self, provider) -> None:
        """A token that is not three dot-separated segments is rejected locally."""
        validator = TokenValidator(provider)

        with pytest.raises(MalformedRequestError) as exc:
            await validator.validate("not.a.jwt")

        assert exc.value.status_code == 401
        assert exc.value.code == ErrorCode.TOKEN_INVALID_FORMAT
        assert provider.verify_calls == 0

    @pytest.mark.asyncio
    async def test_expired_token(self, provider) -> None:
        validator = TokenValidator(provider)
        token = make_token(iat=1_000_000, exp_in=60)

        with pytest.raises(AuthenticationError) as exc:
            await validator.validate(token)

        assert exc.value.code == ErrorCode.TOKEN_EXPIRED
        assert exc.value.status_code == 401

    @pytest.mark.asyncio
    async def test_bad_signature(self, provider) -> None:
        validator = TokenValidator(provider)
        token = make_token(secret="some-other-secret-with-enough-length")

        with pytest.raises(AuthenticationError) as exc:
            await validator.validate(token)

        assert exc.value.code == ErrorCode.TOKEN_INVALID

    @pytest.mark.asyncio
    async def test_wrong_audience(self, provider) -> None:
        validator = TokenValidator(provider)

        with pytest.raises(AuthenticationError) as exc:
            await validator.validate(make_token(audience="another-app"))

        assert exc.value.code == ErrorCode.TOKEN_INVALID

    @pytest.mark.asyncio
    async def test_revoked_token(self, provider) -> None:
        """Tokens issued before revocation are rejected."""
        validator = TokenValidator(provider)
        token = make_token("idp-7", iat=int(time.time()) - 10)
        await provider.revoke_refresh_tokens("idp-7")

        with pytest.raises(AuthenticationError) as exc:
            await validator.validate(token)

        assert exc.value.code == ErrorCode.TOKEN_REVOKED

    @pytest.mark.asyncio
    async def test_disabled_user(self, provider) -> None:
        validator = TokenValidator(provider)
        provider.set_user_disabled("idp-8")

        with pytest.raises(AccountStateError) as exc:
            await validator.validate(make_token("idp-8"))

        assert exc.value.code == ErrorCode.USER_DISABLED
        assert exc.value.status_code == 403

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("kind", "code", "status"),
        [
            (ProviderErrorKind.EXPIRED, ErrorCode.TOKEN_EXPIRED, 401),
            (ProviderErrorKind.REVOKED, ErrorCode.TOKEN_REVOKED, 401),
            (ProviderErrorKind.MALFORMED, ErrorCode.TOKEN_INVALID, 401),
            (ProviderErrorKind.ARGUMENT_ERROR, ErrorCode.TOKEN_INVALID, 401),
            (ProviderErrorKind.USER_NOT_FOUND, ErrorCode.USER_NOT_FOUND, 401),
            (ProviderErrorKind.USER_DISABLED, ErrorCode.USER_DISABLED, 403),
            (ProviderErrorKind.UNAVAILABLE, ErrorCode.UPSTREAM_ERROR, 500),
        ],
    )
    async def test_provider_error_mapping(self, kind, code, status) -> None:
        provider = ScriptedProvider()
        token = make_token()
        provider.add(token, ProviderError(kind, "scripted"))
        validator = TokenValidator(provider)

        with pytest.raises(GatekeeperError) as exc:
            await validator.validate(token)

        assert exc.value.code == code
        assert exc.value.status_code == status
        assert exc.value.detail["provider_kind"] == kind.value

    @pytest.mark.asyncio
    async def test_provider_timeout(self) -> None:
        provider = ScriptedProvider()
        token = make_token()
        provider.add(token, verified())
        provider.delay = 0.5
        validator = TokenValidator(provider, timeout=0.05)

        with pytest.raises(UpstreamError) as exc:
            await validator.validate(token)

        assert exc.value.code == ErrorCode.UPSTREAM_TIMEOUT
        assert exc.value.status_code == 500
        assert exc.value.record_failure is False

    @pytest.mark.asyncio
    async def test_claims_rechecked_after_provider(self) -> None:
        """A provider that vouches for a token without an audience is not trusted blindly."""
        provider = ScriptedProvider()
        token = make_token()
        provider.add(token, verified(aud=None))
        validator = TokenValidator(provider)

        with pytest.raises(AuthenticationError) as exc:
            await validator.validate(token)

        assert exc.value.code == ErrorCode.TOKEN_CLAIMS_INVALID


class TestCheckClaims:
    """Tests for local claim semantics."""

    def _claims(self, now: float, **overrides):
        claims = {"exp": now + 3600, "iat": now, "aud": AUDIENCE, "iss": ISSUER}
        claims.update(overrides)
        return claims

    def test_valid_claims(self) -> None:
        clock = FakeClock(start=10_000.0)
        TokenValidator(ScriptedProvider(), clock=clock).check_claims(self._claims(clock()))

    def test_iat_within_skew_allowed(self) -> None:
        clock = FakeClock(start=10_000.0)
        validator = TokenValidator(ScriptedProvider(), clock_skew=60, clock=clock)

        validator.check_claims(self._claims(clock(), iat=clock() + 60))

    @pytest.mark.parametrize(
        "overrides",
        [
            {"exp": None},
            {"exp": "tomorrow"},
            {"exp": True},
            {"exp": 9_999.0},
            {"exp": 10_000.0},
            {"iat": None},
            {"iat": 10_061.0},
            {"aud": ""},
            {"aud": None},
            {"iss": None},
        ],
    )
    def test_invalid_claims(self, overrides) -> None:
        clock = FakeClock(start=10_000.0)
        validator = TokenValidator(ScriptedProvider(), clock_skew=60, clock=clock)

        with pytest.raises(AuthenticationError) as exc:
            validator.check_claims(self._claims(clock(), **overrides))

        assert exc.value.code == ErrorCode.TOKEN_CLAIMS_INVALID
        assert exc.value.record_failure is True


class TestTranslateProviderError:
    """Tests for provider error translation."""

    def test_carries_stage(self) -> None:
        error = translate_provider_error(
            ProviderError(ProviderErrorKind.EXPIRED), Stage.IDENTITY_RECONCILE
        )

        assert isinstance(error, AuthenticationError)
        assert error.stage == Stage.IDENTITY_RECONCILE

    def test_every_kind_is_mapped(self) -> None:
        for kind in ProviderErrorKind:
            assert isinstance(translate_provider_error(ProviderError(kind)), GatekeeperError)

    def test_email_exists(self) -> None:
        error = translate_provider_error(ProviderError(ProviderErrorKind.EMAIL_EXISTS), Stage.HANDLER)

        assert error.code == ErrorCode.USER_EXISTS
        assert error.status_code == 400
        assert error.record_failure is False
