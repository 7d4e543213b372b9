"""Token, Identity, Abuse, Rate Limit, and Access Engines."""

from review_gatekeeper.engines.abuse_tracker import AbuseStatus, AbuseTracker, SweepStats
from review_gatekeeper.engines.access import (
    ROLE_DOMINANCE,
    AccessDecision,
    AccessGate,
    Permission,
    authorize,
    has_permission,
)
from review_gatekeeper.engines.identity_provider import (
    ExternalUser,
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
from review_gatekeeper.engines.token_validator import TokenValidator, check_structure, extract_bearer
from review_gatekeeper.engines.user_store import (
    InMemoryUserStore,
    UniqueViolation,
    UserRecord,
    UserStore,
)

__all__ = [
    # Token validation
    "TokenValidator",
    "check_structure",
    "extract_bearer",
    # Identity provider
    "IdentityProvider",
    "JWTIdentityProvider",
    "ProviderError",
    "ProviderErrorKind",
    "VerifiedToken",
    "ExternalUser",
    # Reconciliation
    "IdentityReconciler",
    "UserStore",
    "UserRecord",
    "InMemoryUserStore",
    "UniqueViolation",
    # Abuse tracking
    "AbuseTracker",
    "AbuseStatus",
    "SweepStats",
    # Rate limiting
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
    "AccessDecision",
    "Permission",
    "ROLE_DOMINANCE",
    "authorize",
    "has_permission",
]
