"""
Identity Reconciliation for Review Gatekeeper.

The "Who are you?" logic, second half: map a verified external identity
onto the internal user record and build the request Principal.

Resolution order:
1. Record linked to the external id.
2. Record with the same email and no external id: link it.
   A record with the same email linked to a different external id is an
   identity conflict.
3. Otherwise provision a new record with the least-privileged role.

Concurrent first logins for the same identity race on insert; the store's
uniqueness constraints make exactly one insert win and the loser re-fetches.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from datetime import UTC, datetime
from typing import TypeVar

from review_gatekeeper.audit import SecurityAuditor, SecurityEventType
from review_gatekeeper.core.context import ContextLogger
from review_gatekeeper.core.errors import (
    AccountStateError,
    ErrorCode,
    GatekeeperError,
    Stage,
    UpstreamError,
)
from review_gatekeeper.core.identity import Principal, Role
from review_gatekeeper.engines.identity_provider import VerifiedToken
from review_gatekeeper.engines.user_store import UniqueViolation, UserRecord, UserStore

logger = ContextLogger(logging.getLogger(__name__))

T = TypeVar("T")

DEFAULT_ROLE = Role.CLIENT


class IdentityReconciler:
    """
    Resolves verified identities to internal user records.

    Usage:
        reconciler = IdentityReconciler(store, timeout=5.0, auditor=auditor)
        principal = await reconciler.reconcile(verified, ip=client_key)
    """

    def __init__(
        self,
        store: UserStore,
        *,
        timeout: float = 5.0,
        allow_conflict: bool = False,
        auditor: SecurityAuditor | None = None,
    ) -> None:
        """
        Args:
            store: User record backend
            timeout: Bound on each store call in seconds
            allow_conflict: Keep the existing link on an email/external-id
                mismatch instead of failing
            auditor: Receives identity events
        """
        self._store = store
        self._timeout = timeout
        self._allow_conflict = allow_conflict
        self._auditor = auditor

    async def reconcile(
        self,
        verified: VerifiedToken,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> Principal:
        """
        Produce the Principal for a verified identity.

        Raises:
            AccountStateError: IDENTITY_CONFLICT, ACCOUNT_INACTIVE, ACCOUNT_SUSPENDED
            UpstreamError: UPSTREAM_TIMEOUT, UPSTREAM_ERROR
        """
        record = await self._resolve(verified)
        self._check_state(record)

        login_at = datetime.now(UTC)
        await self._touch_last_login(record, login_at)

        return Principal(
            user_id=record.id,
            external_id=verified.external_id,
            email=record.email or verified.email,
            role=record.role,
            email_verified=record.email_verified or verified.email_verified,
            last_login_at=login_at,
            ip=ip,
            user_agent=user_agent,
        )

    async def _resolve(self, verified: VerifiedToken) -> UserRecord:
        record = await self._call(self._store.get_by_external_id(verified.external_id))
        if record is not None:
            return record

        if verified.email:
            record = await self._call(self._store.get_by_email(verified.email))
            if record is not None:
                return await self._link(record, verified)

        return await self._provision(verified)

    async def _link(
        self, record: UserRecord, verified: VerifiedToken, *, refetch: bool = True
    ) -> UserRecord:
        if record.external_id is None:
            try:
                linked = await self._call(
                    self._store.link_external_id(record.id, verified.external_id)
                )
            except UniqueViolation:
                if not refetch:
                    raise UpstreamError(
                        "User store reported a conflicting link",
                        stage=Stage.IDENTITY_RECONCILE,
                    ) from None
                return await self._refetch(verified)
            if linked.external_id == verified.external_id:
                logger.info("Linked user %s to external identity", record.id)
                self._emit(SecurityEventType.IDENTITY_LINKED, linked)
                return linked
            # Linked by a concurrent login with another external id.
            record = linked

        if record.external_id == verified.external_id:
            return record
        return self._conflict(record, verified)

    def _conflict(self, record: UserRecord, verified: VerifiedToken) -> UserRecord:
        self._emit(
            SecurityEventType.IDENTITY_CONFLICT,
            record,
            reason="Email is linked to a different external identity",
            allowed=self._allow_conflict,
        )
        if self._allow_conflict:
            logger.warning(
                "External identity mismatch for user %s; keeping existing link", record.id
            )
            return record
        raise AccountStateError(
            "Account is linked to a different identity",
            code=ErrorCode.IDENTITY_CONFLICT,
            stage=Stage.IDENTITY_RECONCILE,
            detail={"user_id": record.id},
        )

    async def _provision(self, verified: VerifiedToken) -> UserRecord:
        candidate = UserRecord(
            external_id=verified.external_id,
            email=verified.email,
            role=DEFAULT_ROLE,
            suspended=False,
            email_verified=False,
            name=verified.claims.get("name"),
        )
        try:
            created = await self._call(self._store.create(candidate))
        except UniqueViolation:
            return await self._refetch(verified)

        logger.info("Provisioned user %s on first login", created.id)
        self._emit(SecurityEventType.IDENTITY_PROVISIONED, created)
        return created

    async def _refetch(self, verified: VerifiedToken) -> UserRecord:
        """Lost an insert/link race: read back what the winner wrote."""
        record = await self._call(self._store.get_by_external_id(verified.external_id))
        if record is not None:
            return record
        if verified.email:
            record = await self._call(self._store.get_by_email(verified.email))
            if record is not None:
                if record.external_id == verified.external_id:
                    return record
                if record.external_id is None:
                    return await self._link(record, verified, refetch=False)
                return self._conflict(record, verified)
        raise UpstreamError(
            "User record vanished during reconciliation",
            stage=Stage.IDENTITY_RECONCILE,
        )

    @staticmethod
    def _check_state(record: UserRecord) -> None:
        if record.role == Role.INACTIVE:
            raise AccountStateError(
                "Account is inactive",
                code=ErrorCode.ACCOUNT_INACTIVE,
                stage=Stage.IDENTITY_RECONCILE,
            )
        if record.suspended:
            raise AccountStateError(
                "Account is suspended",
                code=ErrorCode.ACCOUNT_SUSPENDED,
                stage=Stage.IDENTITY_RECONCILE,
            )

    async def _touch_last_login(self, record: UserRecord, at: datetime) -> None:
        try:
            await self._call(self._store.touch_last_login(record.id, at))
        except GatekeeperError as e:
            logger.warning("Could not update last login for user %s: %s", record.id, e.message)

    async def _call(self, awaitable: Awaitable[T]) -> T:
        """Run a store call under the timeout, translating failures."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except (UniqueViolation, GatekeeperError):
            raise
        except asyncio.TimeoutError as e:
            logger.error("User store call timed out after %.1fs", self._timeout)
            raise UpstreamError(
                "User store timed out",
                code=ErrorCode.UPSTREAM_TIMEOUT,
                stage=Stage.IDENTITY_RECONCILE,
            ) from e
        except Exception as e:
            logger.exception("User store call failed")
            raise UpstreamError(
                "User store failure",
                stage=Stage.IDENTITY_RECONCILE,
                detail={"error": type(e).__name__, "message": str(e)},
            ) from e

    def _emit(
        self,
        event_type: SecurityEventType,
        record: UserRecord,
        *,
        reason: str | None = None,
        **detail: object,
    ) -> None:
        if self._auditor is None:
            return
        self._auditor.log_event(
            event_type,
            stage=Stage.IDENTITY_RECONCILE,
            reason=reason,
            detail={"user_id": record.id, "role": record.role.value, **detail},
        )
