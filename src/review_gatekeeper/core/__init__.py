"""Core identity, error, configuration, and request-context models."""

from review_gatekeeper.core.config import (
    CookieSameSite,
    RateLimitPolicy,
    SecuritySettings,
    SlowDownPolicy,
    default_rate_limits,
)
from review_gatekeeper.core.context import (
    ContextLogger,
    extract_request_id,
    generate_request_id,
    get_client_key,
    get_request_id,
    request_context,
)
from review_gatekeeper.core.errors import ErrorBody, ErrorCode, GatekeeperError, Stage
from review_gatekeeper.core.identity import Principal, Role

__all__ = [
    "Principal",
    "Role",
    "SecuritySettings",
    "RateLimitPolicy",
    "SlowDownPolicy",
    "CookieSameSite",
    "default_rate_limits",
    "ErrorBody",
    "ErrorCode",
    "GatekeeperError",
    "Stage",
    # Request context
    "request_context",
    "get_request_id",
    "get_client_key",
    "generate_request_id",
    "extract_request_id",
    "ContextLogger",
]
