"""
Structured Security Event Logging for Review Gatekeeper.

Every rejection, abuse signal, and identity change is emitted as a JSON
event of the shape ``{type, client_key, timestamp, stage, reason, detail}``.

Events go to:
1. Python logging (logger ``review_gatekeeper.security``)
2. Optional JSONL file
3. Any extra sinks implementing ``AuditSink``

Abuse events (rate limits, blacklist hits) are expected traffic and are
logged at INFO. Authentication and authorization failures log at WARNING,
upstream failures at ERROR.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, TextIO, runtime_checkable

from review_gatekeeper.core.context import get_client_key, get_request_id
from review_gatekeeper.core.errors import ABUSE_CODES, ErrorCode, Stage
from review_gatekeeper.core.identity import Principal


class SecurityEventType(str, Enum):
    """Types of security events."""

    AUTH_SUCCESS = "auth.success"
    AUTHZ_DENIED = "authz.denied"
    REQUEST_REJECTED = "request.rejected"
    SLOWED_DOWN = "abuse.slowed_down"
    BRUTE_FORCE_DETECTED = "abuse.brute_force"
    SUSPICIOUS_ACTIVITY = "abuse.suspicious"
    IP_BLACKLISTED = "abuse.ip_blacklisted"
    BLACKLIST_CLEARED = "abuse.blacklist_cleared"
    IDENTITY_LINKED = "identity.linked"
    IDENTITY_PROVISIONED = "identity.provisioned"
    IDENTITY_CONFLICT = "identity.conflict"


_EVENT_LEVELS: dict[SecurityEventType, int] = {
    SecurityEventType.AUTHZ_DENIED: logging.WARNING,
    SecurityEventType.BRUTE_FORCE_DETECTED: logging.WARNING,
    SecurityEventType.IP_BLACKLISTED: logging.WARNING,
    SecurityEventType.IDENTITY_CONFLICT: logging.WARNING,
}


@dataclass
class SecurityEvent:
    """Structured security event."""

    type: SecurityEventType
    client_key: str | None = None
    timestamp: float = field(default_factory=time.time)
    stage: str | None = None
    reason: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)
    request_id: str | None = None
    level: int = logging.INFO

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("level")
        data["type"] = self.type.value
        data["timestamp"] = datetime.fromtimestamp(self.timestamp, UTC).isoformat()
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


@runtime_checkable
class AuditSink(Protocol):
    """Destination for security events (SIEM forwarder, queue, test buffer)."""

    def emit(self, event: SecurityEvent) -> None:
        ...


class MemoryAuditSink:
    """Thread-safe in-memory sink; keeps the most recent events."""

    def __init__(self, max_events: int = 10_000) -> None:
        self._events: list[SecurityEvent] = []
        self._max = max_events
        self._lock = threading.Lock()

    def emit(self, event: SecurityEvent) -> None:
        with self._lock:
            self._events.append(event)
            if len(self._events) > self._max:
                del self._events[: len(self._events) - self._max]

    @property
    def events(self) -> list[SecurityEvent]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: SecurityEventType) -> list[SecurityEvent]:
        return [e for e in self.events if e.type == event_type]


class SecurityAuditor:
    """
    Security event emitter.

    Usage:
        auditor = SecurityAuditor(log_path=Path("security_events.jsonl"))
        auditor.log_rejection(
            stage=Stage.TOKEN_VALIDATE,
            code=ErrorCode.TOKEN_EXPIRED,
            reason="Token has expired",
            status_code=401,
        )
    """

    def __init__(
        self,
        *,
        log_path: Path | None = None,
        sinks: list[AuditSink] | None = None,
        logger_name: str = "review_gatekeeper.security",
    ) -> None:
        """
        Args:
            log_path: Path to a JSONL event file (optional)
            sinks: Extra sinks that receive every event
            logger_name: Name for the Python logger
        """
        self._logger = logging.getLogger(logger_name)
        self._sinks: list[AuditSink] = list(sinks or [])
        self._file_lock = threading.Lock()
        self._log_file: TextIO | None = None

        if log_path:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            self._log_file = open(log_path, "a", encoding="utf-8")

    def add_sink(self, sink: AuditSink) -> None:
        self._sinks.append(sink)

    def close(self) -> None:
        with self._file_lock:
            if self._log_file:
                self._log_file.close()
                self._log_file = None

    def emit(self, event: SecurityEvent) -> str:
        """
        Emit an event to the logger, the JSONL file, and every sink.

        Missing client key and request id are filled from the request context.

        Returns:
            Event JSON
        """
        if event.client_key is None:
            event.client_key = get_client_key()
        if event.request_id is None:
            event.request_id = get_request_id()

        json_line = event.to_json()
        self._logger.log(event.level, json_line)

        with self._file_lock:
            if self._log_file:
                self._log_file.write(json_line + "\n")
                self._log_file.flush()

        for sink in self._sinks:
            sink.emit(event)

        return json_line

    def log_event(
        self,
        event_type: SecurityEventType,
        *,
        client_key: str | None = None,
        stage: Stage | str | None = None,
        reason: str | None = None,
        detail: dict[str, Any] | None = None,
        level: int | None = None,
    ) -> str:
        """Emit an event with the default level for its type."""
        return self.emit(
            SecurityEvent(
                type=event_type,
                client_key=client_key,
                stage=stage.value if isinstance(stage, Stage) else stage,
                reason=reason,
                detail=detail or {},
                level=level if level is not None else _EVENT_LEVELS.get(event_type, logging.INFO),
            )
        )

    def log_rejection(
        self,
        *,
        stage: Stage | None,
        code: ErrorCode,
        reason: str,
        status_code: int,
        client_key: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> str:
        """
        Log a request that terminated in an error response.

        Abuse rejections log at INFO, server errors at ERROR, the rest at WARNING.
        """
        if status_code >= 500:
            level = logging.ERROR
        elif code in ABUSE_CODES:
            level = logging.INFO
        else:
            level = logging.WARNING

        return self.log_event(
            SecurityEventType.REQUEST_REJECTED,
            client_key=client_key,
            stage=stage,
            reason=reason,
            detail={"code": code.value, "status": status_code, **(detail or {})},
            level=level,
        )

    def log_auth_success(self, principal: Principal, *, client_key: str | None = None) -> str:
        return self.log_event(
            SecurityEventType.AUTH_SUCCESS,
            client_key=client_key,
            stage=Stage.IDENTITY_RECONCILE,
            detail={"user_id": principal.user_id, "role": principal.role.value},
        )

    def log_authz_denied(
        self,
        principal: Principal,
        *,
        required: list[str],
        reason: str,
        resource: str | None = None,
    ) -> str:
        return self.log_event(
            SecurityEventType.AUTHZ_DENIED,
            client_key=principal.ip,
            stage=Stage.ACCESS_CONTROL,
            reason=reason,
            detail={
                "user_id": principal.user_id,
                "current": principal.role.value,
                "required": required,
                "resource": resource,
            },
        )
