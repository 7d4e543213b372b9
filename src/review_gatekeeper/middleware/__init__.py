"""FastAPI middleware integration."""

from review_gatekeeper.middleware.fastapi import (
    AuthenticatedPrincipal,
    GatekeeperConfig,
    OptionalPrincipal,
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
    "OptionalPrincipal",
]
