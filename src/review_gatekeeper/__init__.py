"""
Review Gatekeeper - Authentication, Authorization & Abuse Mitigation.

Security core of the review-management backend: bearer token validation
against an external identity provider, reconciliation of provider
identities with internal user records, role-hierarchy access control, and
in-process rate limiting, slow-down, brute-force detection, and IP
blacklisting, composed into a FastAPI middleware pipeline.
"""

__version__ = "0.1.0"

from review_gatekeeper.audit import MemoryAuditSink, SecurityAuditor, SecurityEvent, SecurityEventType
from review_gatekeeper.core.config import (
    CookieSameSite,
    RateLimitPolicy,
    SecuritySettings,
    SlowDownPolicy,
)
from review_gatekeeper.core.errors import (
    AbuseDetectedError,
    AccountStateError,
    AuthenticationError,
    AuthorizationError,
    ErrorBody,
    ErrorCode,
    GatekeeperError,
    MalformedRequestError,
    Stage,
    UpstreamError,
)
from review_gatekeeper.core.identity import Principal, Role
from review_gatekeeper.engines.abuse_tracker import AbuseTracker
from review_gatekeeper.engines.access import AccessGate, Permission, authorize
from review_gatekeeper.engines.identity_provider import (
    IdentityProvider,
    JWTIdentityProvider,
    ProviderError,
    ProviderErrorKind,
    VerifiedToken,
)
from review_gatekeeper.engines.rate_limiter import (
    InMemoryRateLimiter,
    NullRateLimiter,
    RateLimiter,
    RateLimitInfo,
    RateLimitRegistry,
    RateLimitResult,
    SlowDownGovernor,
    normalize_client_key,
)
from review_gatekeeper.engines.reconciler import IdentityReconciler
from review_gatekeeper.engines.token_validator import TokenValidator
from review_gatekeeper.engines.user_store import (
    InMemoryUserStore,
    UniqueViolation,
    UserRecord,
    UserStore,
)
from review_gatekeeper.middleware.fastapi import (
    AuthenticatedPrincipal,
    GatekeeperConfig,
    SecurityMiddleware,
    configure_gatekeeper,
    optional_auth,
    rate_limit,
    require_auth,
    require_permission,
    require_role,
    slow_down,
)

__all__ = [
    # Identity
    "Principal",
    "Role",
    # Configuration
    "SecuritySettings",
    "RateLimitPolicy",
    "SlowDownPolicy",
    "CookieSameSite",
    # Errors
    "GatekeeperError",
    "MalformedRequestError",
    "AuthenticationError",
    "AuthorizationError",
    "AccountStateError",
    "AbuseDetectedError",
    "UpstreamError",
    "ErrorBody",
    "ErrorCode",
    "Stage",
    # Audit
    "SecurityAuditor",
    "SecurityEvent",
    "SecurityEventType",
    "MemoryAuditSink",
    # Identity provider
    "IdentityProvider",
    "JWTIdentityProvider",
    "ProviderError",
    "ProviderErrorKind",
    "VerifiedToken",
    # Token validation & reconciliation
    "TokenValidator",
    "IdentityReconciler",
    "UserStore",
    "UserRecord",
    "InMemoryUserStore",
    "UniqueViolation",
    # Abuse mitigation
    "AbuseTracker",
    "RateLimiter",
    "RateLimitInfo",
    "RateLimitResult",
    "RateLimitRegistry",
    "InMemoryRateLimiter",
    "NullRateLimiter",
    "SlowDownGovernor",
    "normalize_client_key",
    # Access control
    "AccessGate",
    "Permission",
    "authorize",
    # FastAPI
    "GatekeeperConfig",
    "SecurityMiddleware",
    "configure_gatekeeper",
    "require_auth",
    "optional_auth",
    "require_role",
    "require_permission",
    "rate_limit",
    "slow_down",
    "AuthenticatedPrincipal",
]
