"""
Abuse Tracking for Review Gatekeeper.

In-memory, time-windowed abuse state per client key:

- Failed-attempt log: the most recent failures (capped), used for
  sliding-window brute-force detection. Cleared on successful auth.
- Suspicion score: incremented each time a failure lands while the recent
  failure count is at or above the brute-force threshold. Purged one hour
  after the key was first flagged.
- Blacklist: keys whose suspicion score exceeded the ceiling. Denied
  unconditionally until cleared (or until the optional TTL elapses).

State is process-local and lost on restart. A background sweep thread
expires stale entries independently of request traffic.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from review_gatekeeper.audit import SecurityAuditor, SecurityEventType

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class Sweepable(Protocol):
    """Component with expiring state cleaned up by the sweep."""

    def cleanup(self) -> int:
        ...


@dataclass(frozen=True)
class FailedAttempt:
    """One failed authentication attempt."""

    timestamp: float
    reason: str


@dataclass
class SuspicionEntry:
    """Suspicion score for one client key."""

    score: int
    first_flagged: float


@dataclass
class BlacklistEntry:
    """Entry in the client blacklist."""

    blacklisted_at: float
    reason: str
    expires_at: float | None = None  # None = until explicitly cleared


@dataclass(frozen=True)
class AbuseStatus:
    """State of a client key right after a recorded failure."""

    recent_failures: int
    suspicion_score: int
    blacklisted: bool


@dataclass(frozen=True)
class SweepStats:
    """What a sweep removed."""

    attempts_removed: int = 0
    keys_removed: int = 0
    suspicion_removed: int = 0
    blacklist_removed: int = 0
    windows_removed: int = 0

    @property
    def total(self) -> int:
        return (
            self.attempts_removed
            + self.keys_removed
            + self.suspicion_removed
            + self.blacklist_removed
            + self.windows_removed
        )


class AbuseTracker:
    """
    Failed-attempt, suspicion, and blacklist state for client keys.

    Thread-safe; every compound read-modify-write runs under one lock.

    Usage:
        tracker = AbuseTracker(auditor=auditor)
        tracker.start()                       # background sweep

        if tracker.is_blacklisted(client_key):
            ...
        tracker.record_failure(client_key, "TOKEN_EXPIRED")
        tracker.clear_on_success(client_key)

        tracker.stop()
    """

    def __init__(
        self,
        *,
        retention: int = 20,
        window_seconds: float = 900,
        brute_force_threshold: int = 5,
        suspicion_ceiling: int = 20,
        suspicion_horizon: float = 3600,
        blacklist_ttl: float | None = None,
        sweep_interval: float = 300,
        clock: Clock = time.time,
        auditor: SecurityAuditor | None = None,
    ) -> None:
        """
        Initialize tracker.

        Args:
            retention: Failed attempts kept per key (oldest evicted)
            window_seconds: Trailing window for counting recent failures
            brute_force_threshold: Recent failures that raise the suspicion score
            suspicion_ceiling: Score above which a key is blacklisted
            suspicion_horizon: Seconds after first flag until the score is purged
            blacklist_ttl: Seconds a blacklist entry lives (None = permanent)
            sweep_interval: Seconds between background sweeps
            clock: Time source
            auditor: Receives abuse events
        """
        if retention <= 0:
            raise ValueError("retention must be positive")
        self._retention = retention
        self._window = window_seconds
        self._threshold = brute_force_threshold
        self._ceiling = suspicion_ceiling
        self._horizon = suspicion_horizon
        self._blacklist_ttl = blacklist_ttl
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._auditor = auditor

        self._attempts: dict[str, deque[FailedAttempt]] = {}
        self._suspicion: dict[str, SuspicionEntry] = {}
        self._blacklist: dict[str, BlacklistEntry] = {}
        self._lock = threading.RLock()

        self._attached: list[Sweepable] = []
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def attach(self, *components: Sweepable) -> None:
        """Register components (rate limiters) whose cleanup runs with each sweep."""
        with self._lock:
            self._attached.extend(components)

    # Failed attempts

    def record_failure(self, key: str, reason: str) -> AbuseStatus:
        """
        Log a failed attempt and update the suspicion score.

        Returns:
            AbuseStatus after the update
        """
        now = self._clock()
        newly_blacklisted = False
        raised_suspicion = False

        with self._lock:
            log = self._attempts.get(key)
            if log is None:
                log = deque(maxlen=self._retention)
                self._attempts[key] = log
            log.append(FailedAttempt(timestamp=now, reason=reason))

            recent = self._count_recent(log, now, self._window)
            if recent >= self._threshold:
                entry = self._suspicion.get(key)
                if entry is None:
                    entry = SuspicionEntry(score=0, first_flagged=now)
                    self._suspicion[key] = entry
                entry.score += 1
                raised_suspicion = True

                if entry.score > self._ceiling and key not in self._blacklist:
                    self._add_to_blacklist(key, f"Suspicion score {entry.score} exceeded {self._ceiling}", now)
                    newly_blacklisted = True

            score = self._suspicion[key].score if key in self._suspicion else 0
            status = AbuseStatus(
                recent_failures=recent,
                suspicion_score=score,
                blacklisted=key in self._blacklist,
            )

        if raised_suspicion:
            self._emit(
                SecurityEventType.SUSPICIOUS_ACTIVITY,
                key,
                reason=reason,
                recent_failures=recent,
                suspicion_score=score,
            )
        if newly_blacklisted:
            logger.warning("Client %s blacklisted after suspicion score %d", key, score)
            self._emit(
                SecurityEventType.IP_BLACKLISTED,
                key,
                reason="Suspicion score exceeded ceiling",
                suspicion_score=score,
            )
        return status

    def is_brute_force(
        self,
        key: str,
        max_attempts: int = 5,
        window_seconds: float = 900,
    ) -> bool:
        """Whether ``key`` has at least ``max_attempts`` failures in the trailing window."""
        now = self._clock()
        with self._lock:
            log = self._attempts.get(key)
            if not log:
                return False
            return self._count_recent(log, now, window_seconds) >= max_attempts

    def clear_on_success(self, key: str) -> None:
        """Drop the failed-attempt log for ``key``. Does not un-blacklist."""
        with self._lock:
            self._attempts.pop(key, None)

    def failure_count(self, key: str, window_seconds: float | None = None) -> int:
        """Failures for ``key`` within the window (default: tracker window)."""
        now = self._clock()
        with self._lock:
            log = self._attempts.get(key)
            if not log:
                return 0
            return self._count_recent(log, now, window_seconds or self._window)

    def suspicion_score(self, key: str) -> int:
        with self._lock:
            entry = self._suspicion.get(key)
            return entry.score if entry else 0

    # Blacklist

    def is_blacklisted(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._blacklist.get(key)
            if entry is None:
                return False
            return entry.expires_at is None or now < entry.expires_at

    def blacklist(self, key: str, reason: str = "manual") -> None:
        """Deny ``key`` unconditionally."""
        now = self._clock()
        with self._lock:
            self._add_to_blacklist(key, reason, now)
        self._emit(SecurityEventType.IP_BLACKLISTED, key, reason=reason)

    def unblacklist(self, key: str) -> bool:
        """
        Clear a blacklist entry and the suspicion score behind it.

        Returns:
            True if ``key`` was blacklisted
        """
        with self._lock:
            removed = self._blacklist.pop(key, None)
            self._suspicion.pop(key, None)
        if removed is not None:
            logger.info("Client %s removed from blacklist", key)
            self._emit(SecurityEventType.BLACKLIST_CLEARED, key, reason=removed.reason)
        return removed is not None

    def blacklist_entry(self, key: str) -> BlacklistEntry | None:
        with self._lock:
            return self._blacklist.get(key)

    # Maintenance

    def sweep(self) -> SweepStats:
        """
        Expire stale state.

        Drops failed attempts older than the window (and keys left empty),
        suspicion entries first flagged longer than the horizon ago, and
        blacklist entries whose TTL elapsed; then cleans attached components.
        """
        now = self._clock()
        attempts_removed = keys_removed = suspicion_removed = blacklist_removed = 0

        with self._lock:
            cutoff = now - self._window
            for key in list(self._attempts):
                log = self._attempts[key]
                while log and log[0].timestamp <= cutoff:
                    log.popleft()
                    attempts_removed += 1
                if not log:
                    del self._attempts[key]
                    keys_removed += 1

            horizon = now - self._horizon
            for key in [k for k, v in self._suspicion.items() if v.first_flagged <= horizon]:
                del self._suspicion[key]
                suspicion_removed += 1

            expired = [
                k
                for k, v in self._blacklist.items()
                if v.expires_at is not None and now >= v.expires_at
            ]
            for key in expired:
                del self._blacklist[key]
                blacklist_removed += 1

            attached = list(self._attached)

        windows_removed = sum(component.cleanup() for component in attached)

        stats = SweepStats(
            attempts_removed=attempts_removed,
            keys_removed=keys_removed,
            suspicion_removed=suspicion_removed,
            blacklist_removed=blacklist_removed,
            windows_removed=windows_removed,
        )
        if stats.total:
            logger.debug("Abuse sweep removed %s", stats)
        return stats

    def start(self) -> None:
        """Start the background sweep thread (idempotent)."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run, name="abuse-tracker-sweep", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the background sweep thread."""
        with self._lock:
            thread = self._thread
            self._thread = None
        self._stop_event.set()
        if thread is not None:
            thread.join(timeout)

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def stats(self) -> dict[str, Any]:
        """Snapshot of tracked state for admin views."""
        now = self._clock()
        with self._lock:
            return {
                "tracked_keys": len(self._attempts),
                "recent_failures": sum(
                    self._count_recent(log, now, self._window) for log in self._attempts.values()
                ),
                "suspicious_keys": len(self._suspicion),
                "blacklisted": sorted(self._blacklist),
                "blacklist_size": len(self._blacklist),
            }

    def _run(self) -> None:
        while not self._stop_event.wait(self._sweep_interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Abuse tracker sweep failed")

    def _add_to_blacklist(self, key: str, reason: str, now: float) -> None:
        """Add a blacklist entry (must hold lock)."""
        expires_at = now + self._blacklist_ttl if self._blacklist_ttl is not None else None
        self._blacklist[key] = BlacklistEntry(blacklisted_at=now, reason=reason, expires_at=expires_at)

    @staticmethod
    def _count_recent(log: deque[FailedAttempt], now: float, window: float) -> int:
        cutoff = now - window
        return sum(1 for attempt in log if attempt.timestamp > cutoff)

    def _emit(self, event_type: SecurityEventType, key: str, *, reason: str, **detail: Any) -> None:
        if self._auditor is None:
            return
        self._auditor.log_event(event_type, client_key=key, reason=reason, detail=detail)
