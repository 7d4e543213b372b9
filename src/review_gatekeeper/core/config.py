"""
Security Settings for Review Gatekeeper.

Environment-level configuration inputs to the middleware chain. Production
enables every protection; development relaxes limits and cookie flags.

Usage:
    settings = SecuritySettings.from_env()
    if settings.strict_rate_limit:
        ...

Environment variables (all optional):
    GATEKEEPER_ENV / ENVIRONMENT / NODE_ENV   environment name
    GATEKEEPER_STRICT_RATE_LIMIT              true/false
    GATEKEEPER_BRUTE_FORCE_PROTECTION         true/false
    GATEKEEPER_IP_BLACKLIST                   true/false
    GATEKEEPER_COOKIE_SECURE                  true/false
    GATEKEEPER_COOKIE_SAME_SITE               strict/lax
    GATEKEEPER_TRUST_PROXY                    true/false
    GATEKEEPER_PROVIDER_TIMEOUT               seconds
    GATEKEEPER_STORE_TIMEOUT                  seconds
    GATEKEEPER_SWEEP_INTERVAL                 seconds
    GATEKEEPER_RATE_LIMIT_<TIER>              "<limit>/<window_seconds>"
    ALLOWED_ORIGINS                           comma-separated origins
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum

FIFTEEN_MINUTES = 15 * 60
ONE_HOUR = 60 * 60

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class CookieSameSite(str, Enum):
    """SameSite attribute for session cookies."""

    STRICT = "strict"
    LAX = "lax"


@dataclass(frozen=True)
class RateLimitPolicy:
    """A named fixed-window limit."""

    name: str
    limit: int
    window_seconds: int
    message: str = "Too many requests"


@dataclass(frozen=True)
class SlowDownPolicy:
    """Graduated delay applied once a request count threshold is crossed."""

    delay_after: int = 50
    delay_step_ms: int = 500
    max_delay_ms: int = 20_000
    window_seconds: int = FIFTEEN_MINUTES


def default_rate_limits(production: bool) -> dict[str, RateLimitPolicy]:
    """Tiered policies: generous global, stricter auth, very strict high-risk."""
    return {
        "global": RateLimitPolicy(
            "global",
            1000 if production else 5000,
            FIFTEEN_MINUTES,
            "Too many requests from this IP",
        ),
        "auth": RateLimitPolicy(
            "auth",
            50 if production else 200,
            FIFTEEN_MINUTES,
            "Rate limit exceeded for sensitive operations",
        ),
        "strict": RateLimitPolicy(
            "strict",
            5 if production else 20,
            FIFTEEN_MINUTES,
            "Too many authentication attempts",
        ),
        "upload": RateLimitPolicy("upload", 20, ONE_HOUR, "Too many file uploads"),
    }


@dataclass(frozen=True)
class SecuritySettings:
    """Configuration for the security middleware chain."""

    environment: str = "development"
    strict_rate_limit: bool = False
    brute_force_protection: bool = False
    ip_blacklist: bool = False
    cookie_secure: bool = False
    cookie_same_site: CookieSameSite = CookieSameSite.LAX
    allowed_origins: tuple[str, ...] = ("http://localhost:3000", "http://localhost:8000")
    trust_proxy: bool = False
    provider_timeout: float = 5.0
    store_timeout: float = 5.0
    sweep_interval: float = 300.0
    brute_force_max_attempts: int = 5
    brute_force_window_seconds: int = FIFTEEN_MINUTES
    rate_limits: Mapping[str, RateLimitPolicy] = field(
        default_factory=lambda: default_rate_limits(production=False)
    )
    slow_down: SlowDownPolicy = field(default_factory=SlowDownPolicy)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def for_environment(cls, environment: str) -> SecuritySettings:
        """Defaults for a named environment."""
        production = environment == "production"
        return cls(
            environment=environment,
            strict_rate_limit=production,
            brute_force_protection=production,
            ip_blacklist=production,
            cookie_secure=production,
            cookie_same_site=CookieSameSite.STRICT if production else CookieSameSite.LAX,
            trust_proxy=production,
            rate_limits=default_rate_limits(production),
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> SecuritySettings:
        """
        Load settings from environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Raises:
            ValueError: If a variable holds an unparseable value
        """
        env = os.environ if environ is None else environ
        environment = (
            env.get("GATEKEEPER_ENV") or env.get("ENVIRONMENT") or env.get("NODE_ENV") or "development"
        ).strip().lower()
        base = cls.for_environment(environment)

        same_site = env.get("GATEKEEPER_COOKIE_SAME_SITE")
        origins = env.get("ALLOWED_ORIGINS")

        rate_limits = dict(base.rate_limits)
        for name, policy in base.rate_limits.items():
            raw = env.get(f"GATEKEEPER_RATE_LIMIT_{name.upper()}")
            if raw:
                rate_limits[name] = _parse_policy(policy, raw)

        return replace(
            base,
            strict_rate_limit=_env_bool(env, "GATEKEEPER_STRICT_RATE_LIMIT", base.strict_rate_limit),
            brute_force_protection=_env_bool(
                env, "GATEKEEPER_BRUTE_FORCE_PROTECTION", base.brute_force_protection
            ),
            ip_blacklist=_env_bool(env, "GATEKEEPER_IP_BLACKLIST", base.ip_blacklist),
            cookie_secure=_env_bool(env, "GATEKEEPER_COOKIE_SECURE", base.cookie_secure),
            cookie_same_site=(
                CookieSameSite(same_site.strip().lower()) if same_site else base.cookie_same_site
            ),
            allowed_origins=(
                tuple(o.strip() for o in origins.split(",") if o.strip())
                if origins
                else base.allowed_origins
            ),
            trust_proxy=_env_bool(env, "GATEKEEPER_TRUST_PROXY", base.trust_proxy),
            provider_timeout=_env_float(env, "GATEKEEPER_PROVIDER_TIMEOUT", base.provider_timeout),
            store_timeout=_env_float(env, "GATEKEEPER_STORE_TIMEOUT", base.store_timeout),
            sweep_interval=_env_float(env, "GATEKEEPER_SWEEP_INTERVAL", base.sweep_interval),
            rate_limits=rate_limits,
        )


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def _parse_policy(policy: RateLimitPolicy, raw: str) -> RateLimitPolicy:
    """Parse ``<limit>/<window_seconds>`` overrides."""
    limit_str, _, window_str = raw.partition("/")
    try:
        limit = int(limit_str)
        window = int(window_str) if window_str else policy.window_seconds
    except ValueError as e:
        raise ValueError(f"Invalid rate limit for {policy.name!r}: {raw!r}") from e
    if limit <= 0 or window <= 0:
        raise ValueError(f"Rate limit for {policy.name!r} must be positive: {raw!r}")
    return replace(policy, limit=limit, window_seconds=window)
