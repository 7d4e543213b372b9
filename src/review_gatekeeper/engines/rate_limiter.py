"""
Rate Limiting for Review Gatekeeper.

Fixed-window request counting per client key, with named policy tiers and a
slow-down governor that delays rather than rejects.

Client keys are normalized IP addresses: equivalent spellings of an IPv6
address collapse to one key, IPv4-mapped IPv6 collapses to the IPv4 form,
and IPv6 clients are bucketed by /64 prefix since a single host usually
controls the whole prefix.

Zero-trust: Default deny when rate limit exceeded.
"""

from __future__ import annotations

import ipaddress
import math
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

from review_gatekeeper.core.config import RateLimitPolicy, SecuritySettings, SlowDownPolicy

Clock = Callable[[], float]

UNKNOWN_CLIENT = "unknown"


def normalize_client_key(raw: str | None, *, ipv6_subnet: int | None = 64) -> str:
    """
    Canonicalize a client identifier.

    Args:
        raw: Remote address or other identifier
        ipv6_subnet: Prefix length IPv6 addresses are masked to (None keeps full address)

    Returns:
        Normalized key; ``"unknown"`` for empty input
    """
    if raw is None:
        return UNKNOWN_CLIENT
    value = raw.strip()
    if not value:
        return UNKNOWN_CLIENT

    candidate = value
    if candidate.startswith("[") and "]" in candidate:
        candidate = candidate[1 : candidate.index("]")]
    candidate = candidate.split("%", 1)[0]

    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        return value.lower()

    if isinstance(address, ipaddress.IPv6Address):
        if address.ipv4_mapped is not None:
            return str(address.ipv4_mapped)
        if ipv6_subnet is not None:
            network = ipaddress.IPv6Network(f"{address}/{ipv6_subnet}", strict=False)
            return str(network)
    return str(address)


class RateLimitResult(Enum):
    """Result of a rate limit check."""

    ALLOWED = "allowed"
    DENIED = "denied"
    WARNING = "warning"  # Approaching limit


@dataclass
class RateLimitInfo:
    """Information about current rate limit state."""

    result: RateLimitResult
    current_count: int
    limit: int
    window_seconds: int
    remaining: int
    reset_at: float  # Unix timestamp when window resets
    retry_after: float | None = None  # Seconds until retry allowed (if denied)
    policy: str | None = None

    @property
    def is_allowed(self) -> bool:
        """Whether the request is allowed (includes warnings)."""
        return self.result != RateLimitResult.DENIED

    @property
    def usage_percent(self) -> float:
        """Percentage of limit used."""
        return (self.current_count / self.limit) * 100 if self.limit > 0 else 0

    @property
    def retry_after_seconds(self) -> int:
        """Whole seconds until retry, rounded up, at least 1."""
        return max(1, math.ceil(self.retry_after or 0))

    def to_headers(self, now: float) -> dict[str, str]:
        """Standard ``RateLimit-*`` response headers."""
        return {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(max(0, math.ceil(self.reset_at - now))),
        }


@runtime_checkable
class RateLimiter(Protocol):
    """
    Protocol for rate limiter implementations.

    All operations must be thread-safe.
    """

    name: str | None
    message: str

    def check(self, key: str) -> RateLimitInfo:
        """
        Check rate limit for a key and increment counter.

        Args:
            key: Normalized client key

        Returns:
            RateLimitInfo with current state
        """
        ...

    def reset(self, key: str) -> bool:
        ...

    def get_info(self, key: str) -> RateLimitInfo | None:
        """Current state without incrementing; None if the key has no live window."""
        ...

    def cleanup(self) -> int:
        """Drop expired windows. Returns number removed."""
        ...


@dataclass
class WindowEntry:
    """One client's fixed window."""

    count: int
    reset_at: float


class InMemoryRateLimiter:
    """
    In-memory fixed window rate limiter.

    The first request from a key opens a window ending ``window_seconds``
    later. Requests inside the window increment its count; once the count
    exceeds ``limit`` the request is denied with the time left until reset.
    The first request at or after the reset time opens a fresh window.

    Thread-safe implementation for single-instance deployments.

    Usage:
        limiter = InMemoryRateLimiter(limit=100, window_seconds=900)

        info = limiter.check("192.0.2.10")
        if not info.is_allowed:
            raise AbuseDetectedError(..., retry_after=info.retry_after_seconds)
    """

    def __init__(
        self,
        limit: int = 100,
        window_seconds: int = 60,
        warning_threshold: float = 0.8,
        *,
        name: str | None = None,
        message: str = "Too many requests",
        clock: Clock = time.time,
    ) -> None:
        """
        Initialize rate limiter.

        Args:
            limit: Maximum requests per window
            window_seconds: Window duration in seconds
            warning_threshold: Percentage (0-1) at which to return WARNING
            name: Policy name reported in RateLimitInfo
            message: Error message used when the limit is exceeded
            clock: Time source
        """
        if limit <= 0 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")
        self._limit = limit
        self._window = window_seconds
        self._warning_threshold = warning_threshold
        self.name = name
        self.message = message
        self._clock = clock
        self._entries: dict[str, WindowEntry] = {}
        self._lock = threading.RLock()
        self._last_cleanup = clock()
        self._cleanup_interval = max(window_seconds // 10, 1)

    @classmethod
    def from_policy(cls, policy: RateLimitPolicy, *, clock: Clock = time.time) -> InMemoryRateLimiter:
        return cls(
            limit=policy.limit,
            window_seconds=policy.window_seconds,
            name=policy.name,
            message=policy.message,
            clock=clock,
        )

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def window_seconds(self) -> int:
        return self._window

    def check(self, key: str) -> RateLimitInfo:
        """Check rate limit and increment counter."""
        now = self._clock()

        with self._lock:
            self._maybe_cleanup(now)

            entry = self._entries.get(key)

            if entry is None or now >= entry.reset_at:
                entry = WindowEntry(count=1, reset_at=now + self._window)
                self._entries[key] = entry
                return self._make_info(entry, now, self._result_for(entry.count))

            entry.count += 1
            return self._make_info(entry, now, self._result_for(entry.count))

    def reset(self, key: str) -> bool:
        """Reset rate limit for a key."""
        with self._lock:
            if key in self._entries:
                del self._entries[key]
                return True
            return False

    def get_info(self, key: str) -> RateLimitInfo | None:
        """Get current rate limit info without incrementing."""
        now = self._clock()

        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now >= entry.reset_at:
                return None
            return self._make_info(entry, now, self._result_for(entry.count))

    def cleanup(self) -> int:
        """Drop every window whose reset time has passed."""
        now = self._clock()
        with self._lock:
            stale = [k for k, v in self._entries.items() if now >= v.reset_at]
            for key in stale:
                del self._entries[key]
            self._last_cleanup = now
            return len(stale)

    def _result_for(self, count: int) -> RateLimitResult:
        if count > self._limit:
            return RateLimitResult.DENIED
        if count >= self._limit * self._warning_threshold:
            return RateLimitResult.WARNING
        return RateLimitResult.ALLOWED

    def _make_info(
        self,
        entry: WindowEntry,
        now: float,
        result: RateLimitResult,
    ) -> RateLimitInfo:
        """Create RateLimitInfo from entry."""
        return RateLimitInfo(
            result=result,
            current_count=entry.count,
            limit=self._limit,
            window_seconds=self._window,
            remaining=max(0, self._limit - entry.count),
            reset_at=entry.reset_at,
            retry_after=entry.reset_at - now if result == RateLimitResult.DENIED else None,
            policy=self.name,
        )

    def _maybe_cleanup(self, now: float) -> None:
        """Clean up expired entries (must hold lock)."""
        if now - self._last_cleanup < self._cleanup_interval:
            return

        self._entries = {k: v for k, v in self._entries.items() if v.reset_at > now}
        self._last_cleanup = now

    @property
    def tracked_keys(self) -> int:
        """Number of currently tracked keys."""
        with self._lock:
            return len(self._entries)


class NullRateLimiter:
    """
    No-op rate limiter that always allows requests.

    Stands in for route tiers when strict rate limiting is disabled.
    """

    def __init__(
        self,
        limit: int = 100,
        window_seconds: int = 60,
        *,
        name: str | None = None,
        message: str = "Too many requests",
        clock: Clock = time.time,
    ) -> None:
        self._limit = limit
        self._window = window_seconds
        self.name = name
        self.message = message
        self._clock = clock

    def check(self, key: str) -> RateLimitInfo:
        """Always allows requests."""
        now = self._clock()
        return RateLimitInfo(
            result=RateLimitResult.ALLOWED,
            current_count=0,
            limit=self._limit,
            window_seconds=self._window,
            remaining=self._limit,
            reset_at=now + self._window,
            policy=self.name,
        )

    def reset(self, key: str) -> bool:
        return False

    def get_info(self, key: str) -> RateLimitInfo | None:
        return None

    def cleanup(self) -> int:
        return 0


class SlowDownGovernor:
    """
    Graduated delay once a client crosses a request threshold.

    Within a window, request ``n`` is delayed by
    ``(n - delay_after) * delay_step_ms`` milliseconds, capped at
    ``max_delay_ms``. Requests at or below the threshold are not delayed.
    The governor never rejects; it only reports how long to wait.

    Usage:
        governor = SlowDownGovernor.from_policy(settings.slow_down)
        delay = governor.hit(client_key)
        if delay:
            await asyncio.sleep(delay)
    """

    def __init__(
        self,
        delay_after: int = 50,
        delay_step_ms: int = 500,
        max_delay_ms: int = 20_000,
        window_seconds: int = 900,
        *,
        clock: Clock = time.time,
    ) -> None:
        if delay_after < 0 or delay_step_ms < 0 or max_delay_ms < 0:
            raise ValueError("slow-down parameters must not be negative")
        self.delay_after = delay_after
        self.delay_step_ms = delay_step_ms
        self.max_delay_ms = max_delay_ms
        # Counting only; the counter's own limit never causes a rejection here.
        self._counter = InMemoryRateLimiter(
            limit=max(delay_after, 1),
            window_seconds=window_seconds,
            name="slow_down",
            clock=clock,
        )

    @classmethod
    def from_policy(cls, policy: SlowDownPolicy, *, clock: Clock = time.time) -> SlowDownGovernor:
        return cls(
            delay_after=policy.delay_after,
            delay_step_ms=policy.delay_step_ms,
            max_delay_ms=policy.max_delay_ms,
            window_seconds=policy.window_seconds,
            clock=clock,
        )

    def delay_for(self, count: int) -> float:
        """Delay in seconds for the ``count``-th request of a window."""
        excess = max(0, count - self.delay_after)
        return min(excess * self.delay_step_ms, self.max_delay_ms) / 1000.0

    def hit(self, key: str) -> float:
        """Count a request and return its delay in seconds."""
        info = self._counter.check(key)
        return self.delay_for(info.current_count)

    def reset(self, key: str) -> bool:
        return self._counter.reset(key)

    def cleanup(self) -> int:
        return self._counter.cleanup()

    @property
    def tracked_keys(self) -> int:
        return self._counter.tracked_keys


class RateLimitRegistry(Mapping[str, RateLimiter]):
    """
    Named rate limit tiers.

    The ``global`` tier always counts. Route tiers (``auth``, ``strict``,
    ``upload``) are live only when strict rate limiting is enabled and are
    no-op limiters otherwise.
    """

    GLOBAL = "global"

    def __init__(self, limiters: Mapping[str, RateLimiter]) -> None:
        if self.GLOBAL not in limiters:
            raise ValueError("registry requires a 'global' tier")
        self._limiters = dict(limiters)

    @classmethod
    def from_settings(cls, settings: SecuritySettings, *, clock: Clock = time.time) -> RateLimitRegistry:
        limiters: dict[str, RateLimiter] = {}
        for name, policy in settings.rate_limits.items():
            if name == cls.GLOBAL or settings.strict_rate_limit:
                limiters[name] = InMemoryRateLimiter.from_policy(policy, clock=clock)
            else:
                limiters[name] = NullRateLimiter(
                    policy.limit,
                    policy.window_seconds,
                    name=name,
                    message=policy.message,
                    clock=clock,
                )
        return cls(limiters)

    def __getitem__(self, tier: str) -> RateLimiter:
        try:
            return self._limiters[tier]
        except KeyError:
            raise KeyError(f"Unknown rate limit tier: {tier!r}") from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._limiters)

    def __len__(self) -> int:
        return len(self._limiters)

    @property
    def global_limiter(self) -> RateLimiter:
        return self._limiters[self.GLOBAL]

    def cleanup(self) -> int:
        return sum(limiter.cleanup() for limiter in self._limiters.values())
