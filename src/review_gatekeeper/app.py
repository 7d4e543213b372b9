"""
Application Factory for Review Gatekeeper.

Builds a FastAPI app with the security pipeline installed and the
authentication routes of the review platform:

    GET  /health                      public
    GET  /auth/profile                auth required
    PUT  /auth/profile                auth required
    POST /auth/signup                 strict tier + slow-down
    POST /auth/logout                 auth required, revokes refresh tokens
    POST /auth/refresh                auth required, issues a custom token
    POST /auth/forgot-password        strict tier + slow-down
    POST /auth/reset-password         strict tier + slow-down
    POST /auth/verify-email           auth tier
    GET  /admin/security/stats        admin
    POST /admin/security/unblacklist  admin

Usage:
    app = create_app(
        SecuritySettings.from_env(),
        provider=JWTIdentityProvider(key=..., audience=..., issuer=...),
        store=InMemoryUserStore(),
    )
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from review_gatekeeper import __version__
from review_gatekeeper.audit import SecurityAuditor, SecurityEventType
from review_gatekeeper.core.config import SecuritySettings
from review_gatekeeper.core.context import ContextLogger
from review_gatekeeper.core.errors import (
    ErrorCode,
    MalformedRequestError,
    Stage,
    UpstreamError,
)
from review_gatekeeper.core.identity import Principal
from review_gatekeeper.engines.identity_provider import (
    IdentityProvider,
    ProviderError,
    ProviderErrorKind,
)
from review_gatekeeper.engines.rate_limiter import normalize_client_key
from review_gatekeeper.engines.reconciler import DEFAULT_ROLE
from review_gatekeeper.engines.user_store import (
    InMemoryUserStore,
    UniqueViolation,
    UserRecord,
    UserStore,
)
from review_gatekeeper.middleware.fastapi import (
    AuthenticatedPrincipal,
    GatekeeperConfig,
    client_key_of,
    configure_gatekeeper,
    get_config,
    rate_limit,
    require_role,
    slow_down,
)

logger = ContextLogger(logging.getLogger(__name__))

T = TypeVar("T")

SESSION_COOKIE = "rg_session"
SESSION_MAX_AGE = 24 * 60 * 60

CORS_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"]
CORS_HEADERS = [
    "Content-Type",
    "Authorization",
    "X-Requested-With",
    "X-API-Key",
    "X-Client-Version",
    "X-Request-ID",
]
CORS_EXPOSED_HEADERS = ["X-Total-Count", "X-Page", "X-Per-Page", "X-Request-ID", "Retry-After"]


class SignupRequest(BaseModel):
    email: str | None = None
    password: str | None = None
    name: str | None = None


class ProfileUpdate(BaseModel):
    name: str | None = None


class EmailRequest(BaseModel):
    email: str | None = None


class ResetPasswordRequest(BaseModel):
    code: str | None = None
    new_password: str | None = None


class ActionCodeRequest(BaseModel):
    code: str | None = None


class UnblacklistRequest(BaseModel):
    client_key: str | None = None


def _profile(principal: Principal) -> dict[str, Any]:
    return {
        "id": principal.user_id,
        "external_id": principal.external_id,
        "email": principal.email,
        "role": principal.role.value,
        "email_verified": principal.email_verified,
        "last_login_at": principal.last_login_at.isoformat() if principal.last_login_at else None,
    }


def _require(value: str | None, field: str) -> str:
    if value is None or not value.strip():
        raise MalformedRequestError(
            f"{field} is required",
            code=ErrorCode.MISSING_FIELDS,
            stage=Stage.HANDLER,
            detail={"missing": [field]},
        )
    return value.strip()


async def call_provider(
    config: GatekeeperConfig,
    awaitable: Awaitable[T],
    action: str,
) -> T:
    """
    Run a provider call from a route handler under the provider timeout.

    ``ProviderError`` is re-raised for the handler to interpret; timeouts
    become ``UPSTREAM_TIMEOUT``.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=config.settings.provider_timeout)
    except asyncio.TimeoutError as e:
        logger.error("Identity provider timed out during %s", action)
        raise UpstreamError(
            "Identity provider timed out",
            code=ErrorCode.UPSTREAM_TIMEOUT,
            stage=Stage.HANDLER,
        ) from e


async def call_store(config: GatekeeperConfig, awaitable: Awaitable[T]) -> T:
    """Run a store call from a route handler under the store timeout."""
    try:
        return await asyncio.wait_for(awaitable, timeout=config.settings.store_timeout)
    except asyncio.TimeoutError as e:
        logger.error("User store timed out")
        raise UpstreamError(
            "User store timed out", code=ErrorCode.UPSTREAM_TIMEOUT, stage=Stage.HANDLER
        ) from e


def _user_exists() -> MalformedRequestError:
    return MalformedRequestError(
        "User already exists with this email",
        code=ErrorCode.USER_EXISTS,
        stage=Stage.HANDLER,
    )


async def _rollback_signup(
    config: GatekeeperConfig, provider: IdentityProvider, external_id: str
) -> None:
    """Remove the provider account of a signup whose record was not stored."""
    try:
        await call_provider(config, provider.delete_user(external_id), "signup rollback")
    except (ProviderError, UpstreamError) as e:
        logger.error("Signup rollback failed for %s: %s", external_id, e)
    else:
        logger.warning("Rolled back provider account %s", external_id)


def _upstream(error: ProviderError, action: str) -> UpstreamError:
    return UpstreamError(
        f"Failed to {action}",
        stage=Stage.HANDLER,
        detail={"provider_kind": error.kind.value, "provider_message": error.message},
    )


def _invalid_code(error: ProviderError) -> MalformedRequestError:
    return MalformedRequestError(
        "Invalid or expired code",
        code=ErrorCode.INVALID_ACTION_CODE,
        stage=Stage.HANDLER,
        detail={"provider_kind": error.kind.value},
    )


_CODE_ERRORS = frozenset(
    {ProviderErrorKind.ARGUMENT_ERROR, ProviderErrorKind.EXPIRED, ProviderErrorKind.MALFORMED}
)


def create_app(
    settings: SecuritySettings | None = None,
    *,
    provider: IdentityProvider,
    store: UserStore | None = None,
    auditor: SecurityAuditor | None = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Security settings (defaults to ``SecuritySettings.from_env()``)
        provider: Identity provider adapter
        store: User record backend (defaults to in-memory)
        auditor: Security event emitter
        clock: Time source for the abuse and rate limit state

    Returns:
        Configured FastAPI app
    """
    settings = settings or SecuritySettings.from_env()
    config = GatekeeperConfig(
        settings=settings,
        provider=provider,
        store=store or InMemoryUserStore(),
        auditor=auditor or SecurityAuditor(),
        clock=clock,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        config.tracker.start()
        logger.info("Security sweep started (interval %.0fs)", settings.sweep_interval)
        try:
            yield
        finally:
            config.tracker.stop()
            config.auditor.close()

    app = FastAPI(title="Review Gatekeeper", version=__version__, lifespan=lifespan)

    # Added before the security middleware so that it runs inside it.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=CORS_METHODS,
        allow_headers=CORS_HEADERS,
        expose_headers=CORS_EXPOSED_HEADERS,
        max_age=86400,
    )
    configure_gatekeeper(app, config)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "environment": settings.environment, "version": __version__}

    @app.get("/auth/profile", dependencies=[Depends(rate_limit("auth"))])
    async def get_profile(principal: AuthenticatedPrincipal) -> dict[str, Any]:
        return {"user": _profile(principal)}

    @app.put("/auth/profile", dependencies=[Depends(rate_limit("auth"))])
    async def update_profile(
        request: Request,
        principal: AuthenticatedPrincipal,
        body: ProfileUpdate | None = None,
    ) -> dict[str, Any]:
        name = _require(body.name if body else None, "name")
        cfg = get_config(request)
        record = await call_store(cfg, cfg.store.update(principal.user_id, name=name))
        return {"message": "Profile updated successfully", "user": {"id": record.id, "name": record.name}}

    @app.post(
        "/auth/signup",
        status_code=201,
        dependencies=[Depends(rate_limit("strict")), Depends(slow_down())],
    )
    async def signup(request: Request, body: SignupRequest | None = None) -> dict[str, Any]:
        """
        Create the provider account and its local record together.

        A record that cannot be stored takes the provider account down
        with it. Verification mail delivery is out of scope, so the link
        is only echoed back outside production.
        """
        email = _require(body.email if body else None, "email")
        password = _require(body.password if body else None, "password")
        name = body.name.strip() if body and body.name and body.name.strip() else None
        cfg = get_config(request)

        if await call_store(cfg, cfg.store.get_by_email(email)) is not None:
            raise _user_exists()

        try:
            external = await call_provider(cfg, provider.create_user(email, password, name), "signup")
        except ProviderError as e:
            if e.kind == ProviderErrorKind.EMAIL_EXISTS:
                raise _user_exists() from e
            if e.kind == ProviderErrorKind.ARGUMENT_ERROR:
                raise MalformedRequestError(
                    e.message or "Signup rejected",
                    code=ErrorCode.SIGNUP_REJECTED,
                    stage=Stage.HANDLER,
                    detail={"provider_kind": e.kind.value},
                ) from e
            raise _upstream(e, "create user") from e

        candidate = UserRecord(
            external_id=external.external_id,
            email=external.email or email,
            role=DEFAULT_ROLE,
            email_verified=False,
            name=name,
        )
        try:
            record = await call_store(cfg, cfg.store.create(candidate))
        except UniqueViolation as e:
            await _rollback_signup(cfg, provider, external.external_id)
            raise _user_exists() from e
        except UpstreamError:
            await _rollback_signup(cfg, provider, external.external_id)
            raise
        except Exception as e:
            await _rollback_signup(cfg, provider, external.external_id)
            raise UpstreamError("Failed to store user", stage=Stage.HANDLER) from e

        link: str | None = None
        try:
            link = await call_provider(
                cfg, provider.generate_email_verification_link(record.email), "email verification"
            )
        except (ProviderError, UpstreamError) as e:
            logger.warning("No verification link for user %s: %s", record.id, e)

        try:
            token = await call_provider(
                cfg,
                provider.create_custom_token(
                    external.external_id, {"role": record.role.value, "user_id": record.id}
                ),
                "signup",
            )
        except ProviderError as e:
            raise _upstream(e, "issue token") from e

        cfg.auditor.log_event(
            SecurityEventType.IDENTITY_PROVISIONED,
            client_key=client_key_of(request),
            stage=Stage.HANDLER,
            reason="signup",
            detail={"user_id": record.id},
        )
        logger.info("User %s signed up", record.id)

        result: dict[str, Any] = {
            "message": "User created successfully",
            "user": {
                "id": record.id,
                "external_id": record.external_id,
                "email": record.email,
                "name": record.name,
                "role": record.role.value,
                "email_verified": record.email_verified,
            },
            "custom_token": token,
            "requires_verification": True,
        }
        if link is not None and not settings.is_production:
            result["verification_link"] = link
        return result

    @app.post("/auth/logout", dependencies=[Depends(rate_limit("auth"))])
    async def logout(request: Request, response: Response, principal: AuthenticatedPrincipal) -> dict[str, Any]:
        cfg = get_config(request)
        try:
            await call_provider(cfg, provider.revoke_refresh_tokens(principal.external_id), "logout")
        except ProviderError as e:
            raise _upstream(e, "log out") from e
        response.delete_cookie(
            SESSION_COOKIE,
            secure=settings.cookie_secure,
            httponly=True,
            samesite=settings.cookie_same_site.value,
        )
        logger.info("Refresh tokens revoked for user %s", principal.user_id)
        return {"message": "Logout successful"}

    @app.post("/auth/refresh", dependencies=[Depends(rate_limit("auth"))])
    async def refresh(request: Request, response: Response, principal: AuthenticatedPrincipal) -> dict[str, Any]:
        cfg = get_config(request)
        try:
            token = await call_provider(
                cfg,
                provider.create_custom_token(
                    principal.external_id,
                    {"role": principal.role.value, "user_id": principal.user_id},
                ),
                "refresh",
            )
        except ProviderError as e:
            raise _upstream(e, "refresh token") from e
        response.set_cookie(
            SESSION_COOKIE,
            token,
            max_age=SESSION_MAX_AGE,
            secure=settings.cookie_secure,
            httponly=True,
            samesite=settings.cookie_same_site.value,
        )
        return {"message": "Token refreshed successfully", "custom_token": token}

    @app.post(
        "/auth/forgot-password",
        dependencies=[Depends(rate_limit("strict")), Depends(slow_down())],
    )
    async def forgot_password(request: Request, body: EmailRequest | None = None) -> dict[str, Any]:
        email = _require(body.email if body else None, "email")
        cfg = get_config(request)
        try:
            await call_provider(cfg, provider.generate_password_reset_link(email), "password reset")
            logger.info("Password reset link generated")
        except ProviderError as e:
            # Same answer for unknown accounts: no account enumeration.
            if e.kind != ProviderErrorKind.USER_NOT_FOUND:
                raise _upstream(e, "send reset link") from e
        return {"message": "If an account exists for this email, a reset link has been sent"}

    @app.post(
        "/auth/reset-password",
        dependencies=[Depends(rate_limit("strict")), Depends(slow_down())],
    )
    async def reset_password(request: Request, body: ResetPasswordRequest | None = None) -> dict[str, Any]:
        code = _require(body.code if body else None, "code")
        new_password = _require(body.new_password if body else None, "new_password")
        cfg = get_config(request)
        try:
            email = await call_provider(
                cfg, provider.confirm_password_reset(code, new_password), "password reset"
            )
        except ProviderError as e:
            if e.kind in _CODE_ERRORS:
                raise _invalid_code(e) from e
            raise _upstream(e, "reset password") from e
        return {"message": "Password reset successful", "email": email}

    @app.post("/auth/verify-email", dependencies=[Depends(rate_limit("auth"))])
    async def verify_email(request: Request, body: ActionCodeRequest | None = None) -> dict[str, Any]:
        code = _require(body.code if body else None, "code")
        cfg = get_config(request)
        try:
            email = await call_provider(cfg, provider.apply_action_code(code), "email verification")
        except ProviderError as e:
            if e.kind in _CODE_ERRORS:
                raise _invalid_code(e) from e
            raise _upstream(e, "verify email") from e
        return {"message": "Email verified successfully", "email": email}

    @app.get("/admin/security/stats")
    async def security_stats(
        request: Request,
        principal: Principal = Depends(require_role("admin")),
    ) -> dict[str, Any]:
        cfg = get_config(request)
        return {
            "abuse": cfg.tracker.stats(),
            "rate_limits": {
                name: getattr(limiter, "tracked_keys", 0) for name, limiter in cfg.rate_limits.items()
            },
            "slow_down_keys": cfg.slow_down.tracked_keys,
        }

    @app.post("/admin/security/unblacklist")
    async def unblacklist(
        request: Request,
        body: UnblacklistRequest | None = None,
        principal: Principal = Depends(require_role("admin")),
    ) -> dict[str, Any]:
        client_key = normalize_client_key(_require(body.client_key if body else None, "client_key"))
        cleared = get_config(request).tracker.unblacklist(client_key)
        logger.info("Admin %s cleared blacklist for %s: %s", principal.user_id, client_key, cleared)
        return {"client_key": client_key, "cleared": cleared}

    return app
