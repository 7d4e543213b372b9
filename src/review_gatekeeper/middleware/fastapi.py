"""
FastAPI Integration for Review Gatekeeper.

The security pipeline, in order:

    IP blacklist check -> global rate limit       (SecurityMiddleware)
    route rate limit / slow-down                  (rate_limit(), slow_down())
    token validation -> identity reconciliation   (require_auth / optional_auth)
    access control                                (require_role(), require_permission())
    handler

Every response, including every error response, leaves through
``SecurityMiddleware`` and receives the hardening headers. Every
``GatekeeperError`` is rendered into the standard error body and logged as a
security event with client key, stage, and reason.

Usage:
    app = FastAPI()
    configure_gatekeeper(app, GatekeeperConfig(settings=settings, provider=provider, store=store))

    @app.get("/auth/profile", dependencies=[Depends(rate_limit("auth"))])
    async def profile(principal: AuthenticatedPrincipal):
        return {"user_id": principal.user_id}

    @app.get("/admin/reports")
    async def reports(principal: Principal = Depends(require_role("admin"))):
        ...
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Annotated

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from review_gatekeeper.audit import SecurityAuditor, SecurityEventType
from review_gatekeeper.core.config import SecuritySettings
from review_gatekeeper.core.context import (
    REQUEST_ID_HEADER,
    ContextLogger,
    extract_request_id,
    request_context,
)
from review_gatekeeper.core.errors import (
    AbuseDetectedError,
    ErrorCode,
    GatekeeperError,
    Stage,
)
from review_gatekeeper.core.identity import Principal, Role
from review_gatekeeper.engines.abuse_tracker import AbuseTracker
from review_gatekeeper.engines.access import AccessGate, Permission
from review_gatekeeper.engines.identity_provider import IdentityProvider
from review_gatekeeper.engines.rate_limiter import (
    RateLimitInfo,
    RateLimitRegistry,
    SlowDownGovernor,
    normalize_client_key,
)
from review_gatekeeper.engines.reconciler import IdentityReconciler
from review_gatekeeper.engines.token_validator import TokenValidator, extract_bearer
from review_gatekeeper.engines.user_store import InMemoryUserStore, UserStore

logger = ContextLogger(logging.getLogger(__name__))

CONTENT_SECURITY_POLICY = "; ".join(
    [
        "default-src 'self'",
        "style-src 'self' 'unsafe-inline'",
        "script-src 'self'",
        "img-src 'self' data: https:",
        "connect-src 'self'",
        "font-src 'self'",
        "object-src 'none'",
        "media-src 'self'",
        "frame-src 'none'",
    ]
)

HARDENING_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    "Content-Security-Policy": CONTENT_SECURITY_POLICY,
}

HSTS_HEADER = "max-age=31536000; includeSubDomains; preload"

# Headers that fingerprint the server stack.
STRIPPED_HEADERS = ("Server", "X-Powered-By")


@dataclass
class GatekeeperConfig:
    """
    Wiring for the security pipeline.

    Set up once at app startup; every component not supplied is built from
    ``settings``. Either ``provider`` or a ready ``validator`` is required.
    """

    settings: SecuritySettings = field(default_factory=SecuritySettings.from_env)
    provider: IdentityProvider | None = None
    store: UserStore = field(default_factory=InMemoryUserStore)
    auditor: SecurityAuditor = field(default_factory=SecurityAuditor)
    clock: Callable[[], float] = time.time
    validator: TokenValidator | None = None
    reconciler: IdentityReconciler | None = None
    tracker: AbuseTracker | None = None
    rate_limits: RateLimitRegistry | None = None
    slow_down: SlowDownGovernor | None = None
    gate: AccessGate | None = None
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def __post_init__(self) -> None:
        """Build every component not supplied."""
        settings = self.settings
        if self.validator is None:
            if self.provider is None:
                raise ValueError("GatekeeperConfig requires a provider or a validator")
            self.validator = TokenValidator(
                self.provider, timeout=settings.provider_timeout, clock=self.clock
            )
        if self.reconciler is None:
            self.reconciler = IdentityReconciler(
                self.store, timeout=settings.store_timeout, auditor=self.auditor
            )
        if self.tracker is None:
            self.tracker = AbuseTracker(
                sweep_interval=settings.sweep_interval,
                clock=self.clock,
                auditor=self.auditor,
            )
        if self.rate_limits is None:
            self.rate_limits = RateLimitRegistry.from_settings(settings, clock=self.clock)
        if self.slow_down is None:
            self.slow_down = SlowDownGovernor.from_policy(settings.slow_down, clock=self.clock)
        if self.gate is None:
            self.gate = AccessGate(auditor=self.auditor)

        self.tracker.attach(self.rate_limits, self.slow_down)


def configure_gatekeeper(app: FastAPI, config: GatekeeperConfig) -> None:
    """
    Install the security pipeline on an application.

    Call this at app construction, after any middleware that should run
    inside the security layer (CORS) has been added.

    Args:
        app: FastAPI application
        config: Gatekeeper configuration
    """
    app.state.gatekeeper = config
    app.add_middleware(SecurityMiddleware)
    app.add_exception_handler(GatekeeperError, gatekeeper_error_handler)


def get_config(request: Request) -> GatekeeperConfig:
    """Configuration installed by ``configure_gatekeeper``."""
    config = getattr(request.app.state, "gatekeeper", None)
    if config is None:
        raise RuntimeError("Gatekeeper is not configured; call configure_gatekeeper(app, config)")
    return config


def resolve_client_key(request: Request, *, trust_proxy: bool = False) -> str:
    """
    Normalized client key for a request.

    ``X-Forwarded-For`` is honoured only behind a trusted proxy; otherwise
    a client could pick its own key.
    """
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return normalize_client_key(first)
    host = request.client.host if request.client else None
    return normalize_client_key(host)


def client_key_of(request: Request) -> str:
    """Client key resolved by the middleware for this request."""
    key = getattr(request.state, "client_key", None)
    if key is None:
        key = resolve_client_key(request, trust_proxy=get_config(request).settings.trust_proxy)
        request.state.client_key = key
    return key


def apply_security_headers(
    response: Response,
    settings: SecuritySettings,
    *,
    request_id: str | None = None,
    rate_info: RateLimitInfo | None = None,
    now: float | None = None,
) -> Response:
    """Add hardening headers and strip fingerprinting headers."""
    for name, value in HARDENING_HEADERS.items():
        response.headers[name] = value
    if settings.is_production:
        response.headers["Strict-Transport-Security"] = HSTS_HEADER
    for name in STRIPPED_HEADERS:
        if name in response.headers:
            del response.headers[name]
    if request_id:
        response.headers[REQUEST_ID_HEADER] = request_id
    if rate_info is not None:
        for name, value in rate_info.to_headers(now if now is not None else time.time()).items():
            response.headers.setdefault(name, value)
    return response


def render_error(
    config: GatekeeperConfig,
    error: GatekeeperError,
    *,
    client_key: str | None = None,
) -> JSONResponse:
    """
    Render an error into the standard body and log the security event.

    Diagnostic detail is included only outside production.
    """
    body = error.to_body(include_details=not config.settings.is_production)
    headers: dict[str, str] = {}
    if error.retry_after is not None:
        headers["Retry-After"] = str(error.retry_after)
    if error.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"

    config.auditor.log_rejection(
        stage=error.stage,
        code=error.code,
        reason=error.message,
        status_code=error.status_code,
        client_key=client_key,
        detail=error.detail or None,
    )

    return JSONResponse(
        status_code=error.status_code,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
        headers=headers,
    )


async def gatekeeper_error_handler(request: Request, exc: Exception) -> Response:
    """Exception handler for every ``GatekeeperError`` raised below the middleware."""
    if not isinstance(exc, GatekeeperError):
        raise exc
    return render_error(get_config(request), exc, client_key=getattr(request.state, "client_key", None))


class SecurityMiddleware(BaseHTTPMiddleware):
    """
    Outermost stage of the pipeline.

    Binds the request context, screens the client key against the blacklist
    and the global rate limit, and hardens every response on the way out,
    whatever path produced it.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        """Screen, process, and harden a request."""
        config = get_config(request)
        settings = config.settings
        client_key = resolve_client_key(request, trust_proxy=settings.trust_proxy)
        request.state.client_key = client_key

        with request_context(extract_request_id(request.headers), client_key=client_key) as request_id:
            request.state.request_id = request_id
            rate_info: RateLimitInfo | None = None
            try:
                if settings.ip_blacklist and config.tracker.is_blacklisted(client_key):
                    raise AbuseDetectedError(
                        "Access denied",
                        code=ErrorCode.IP_BLACKLISTED,
                        status_code=403,
                        stage=Stage.IP_BLACKLIST_CHECK,
                    )

                limiter = config.rate_limits.global_limiter
                rate_info = limiter.check(client_key)
                if not rate_info.is_allowed:
                    raise AbuseDetectedError(
                        limiter.message,
                        retry_after=rate_info.retry_after_seconds,
                        stage=Stage.GLOBAL_RATE_LIMIT,
                        detail={"policy": limiter.name},
                    )

                response = await call_next(request)
            except GatekeeperError as e:
                response = render_error(config, e, client_key=client_key)
            except Exception:
                logger.exception("Unhandled error on %s %s", request.method, request.url.path)
                response = render_error(
                    config,
                    GatekeeperError("Internal server error", stage=Stage.HANDLER),
                    client_key=client_key,
                )

            return apply_security_headers(
                response,
                settings,
                request_id=request_id,
                rate_info=rate_info,
                now=config.clock(),
            )


def rate_limit(tier: str) -> Callable[..., Awaitable[RateLimitInfo]]:
    """
    Factory for a route-level rate limit dependency.

    Usage:
        @app.post("/auth/forgot-password", dependencies=[Depends(rate_limit("strict"))])
        async def forgot_password(...):
            ...

    Args:
        tier: Name of a policy in the rate limit registry

    Returns:
        Dependency function
    """

    async def check_rate_limit(request: Request) -> RateLimitInfo:
        config = get_config(request)
        limiter = config.rate_limits[tier]
        info = limiter.check(client_key_of(request))
        if not info.is_allowed:
            raise AbuseDetectedError(
                limiter.message,
                retry_after=info.retry_after_seconds,
                stage=Stage.ROUTE_RATE_LIMIT,
                detail={"policy": tier},
            )
        return info

    return check_rate_limit


def slow_down() -> Callable[..., Awaitable[float]]:
    """
    Factory for the slow-down dependency.

    Delays requests past the threshold instead of rejecting them.

    Returns:
        Dependency function resolving to the applied delay in seconds
    """

    async def apply_slow_down(request: Request) -> float:
        config = get_config(request)
        client_key = client_key_of(request)
        delay = config.slow_down.hit(client_key)
        if delay > 0:
            config.auditor.log_event(
                SecurityEventType.SLOWED_DOWN,
                client_key=client_key,
                stage=Stage.SLOW_DOWN,
                detail={"delay_ms": int(delay * 1000)},
            )
            await config.sleep(delay)
        return delay

    return apply_slow_down


async def authenticate_request(
    config: GatekeeperConfig,
    request: Request,
    client_key: str,
) -> Principal:
    """TOKEN_VALIDATE then IDENTITY_RECONCILE for one request."""
    token = extract_bearer(request.headers.get("Authorization"))
    verified = await config.validator.validate(token)
    return await config.reconciler.reconcile(
        verified,
        ip=client_key,
        user_agent=request.headers.get("User-Agent"),
    )


async def require_auth(request: Request) -> Principal:
    """
    FastAPI dependency that requires authentication.

    With brute-force protection on, a client key with too many recent
    failures is rejected before its token is looked at, and each such
    rejection counts as another failure. Failures flagged
    for tracking feed the abuse tracker; success clears the key's log.

    Usage:
        @app.get("/protected")
        async def protected(principal: Principal = Depends(require_auth)):
            return {"user": principal.user_id}

    Raises:
        GatekeeperError: Any token, identity, or abuse failure
    """
    cached = getattr(request.state, "principal", None)
    if cached is not None:
        return cached

    config = get_config(request)
    settings = config.settings
    client_key = client_key_of(request)

    if settings.brute_force_protection and config.tracker.is_brute_force(
        client_key,
        settings.brute_force_max_attempts,
        settings.brute_force_window_seconds,
    ):
        config.tracker.record_failure(client_key, ErrorCode.BRUTE_FORCE_DETECTED.value)
        config.auditor.log_event(
            SecurityEventType.BRUTE_FORCE_DETECTED,
            client_key=client_key,
            stage=Stage.TOKEN_VALIDATE,
            reason="Too many failed authentication attempts",
        )
        raise AbuseDetectedError(
            "Too many failed authentication attempts",
            code=ErrorCode.BRUTE_FORCE_DETECTED,
            retry_after=settings.brute_force_window_seconds,
            stage=Stage.TOKEN_VALIDATE,
        )

    try:
        principal = await authenticate_request(config, request, client_key)
    except GatekeeperError as e:
        if e.record_failure:
            config.tracker.record_failure(client_key, e.code.value)
        raise

    config.tracker.clear_on_success(client_key)
    config.auditor.log_auth_success(principal, client_key=client_key)
    request.state.principal = principal
    return principal


async def optional_auth(request: Request) -> Principal | None:
    """
    FastAPI dependency for routes where authentication is optional.

    Any failure while validating or reconciling is swallowed and the
    request proceeds without a principal. Failures here are not counted
    by the abuse tracker.
    """
    cached = getattr(request.state, "principal", None)
    if cached is not None:
        return cached
    if not request.headers.get("Authorization"):
        return None

    config = get_config(request)
    try:
        principal = await authenticate_request(config, request, client_key_of(request))
    except GatekeeperError as e:
        logger.debug("Optional authentication skipped: %s (%s)", e.message, e.code.value)
        return None

    request.state.principal = principal
    return principal


AuthenticatedPrincipal = Annotated[Principal, Depends(require_auth)]
OptionalPrincipal = Annotated[Principal | None, Depends(optional_auth)]


def require_role(*roles: Role | str, strict: bool = False) -> Callable[..., Awaitable[Principal]]:
    """
    Factory for role-checking dependency.

    Senior roles pass checks declared for the roles they dominate unless
    ``strict`` is set.

    Usage:
        @app.get("/admin/security/stats")
        async def stats(principal: Principal = Depends(require_role("admin"))):
            ...

    Args:
        roles: Allowed roles (any match)
        strict: Ignore the role hierarchy

    Returns:
        Dependency function
    """
    allowed = frozenset(Role(r) for r in roles)
    if not allowed:
        raise ValueError("require_role needs at least one role")

    async def check_role(request: Request, principal: AuthenticatedPrincipal) -> Principal:
        get_config(request).gate.enforce(
            principal, allowed, strict=strict, resource=request.url.path
        )
        return principal

    return check_role


def require_permission(permission: Permission | str) -> Callable[..., Awaitable[Principal]]:
    """
    Factory for permission-checking dependency.

    Args:
        permission: Feature permission the principal's role must carry

    Returns:
        Dependency function
    """
    required = Permission(permission)

    async def check_permission(request: Request, principal: AuthenticatedPrincipal) -> Principal:
        get_config(request).gate.enforce_permission(
            principal, required, resource=request.url.path
        )
        return principal

    return check_permission
