"""
User Record Store for Review Gatekeeper.

The relational store that owns user records is an external collaborator;
this module defines the record shape and the operations the reconciler
needs, plus an in-memory backend for single-instance use and tests.

Backends must enforce two uniqueness constraints: at most one record per
external identity id and at most one per email (case-insensitive). A
violation is reported as ``UniqueViolation`` so callers can re-fetch
instead of failing.
"""

from __future__ import annotations

import copy
import threading
import uuid
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from review_gatekeeper.core.identity import Role


def _now() -> datetime:
    return datetime.now(UTC)


class UserRecord(BaseModel):
    """User record as persisted by the store."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    external_id: str | None = None
    email: str | None = None
    role: Role = Role.CLIENT
    suspended: bool = False
    email_verified: bool = False
    name: str | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    last_login_at: datetime | None = None


class UniqueViolation(Exception):
    """A write would duplicate an external id or an email."""

    def __init__(self, field: str, value: str) -> None:
        super().__init__(f"Duplicate {field}: {value!r}")
        self.field = field
        self.value = value


class UserNotFound(LookupError):
    """No record with the given id."""


@runtime_checkable
class UserStore(Protocol):
    """
    Protocol for user record backends.

    All operations must be safe under concurrent use.
    """

    async def get_by_id(self, user_id: str) -> UserRecord | None:
        ...

    async def get_by_external_id(self, external_id: str) -> UserRecord | None:
        ...

    async def get_by_email(self, email: str) -> UserRecord | None:
        ...

    async def create(self, record: UserRecord) -> UserRecord:
        """
        Insert a new record.

        Raises:
            UniqueViolation: external id or email already taken
        """
        ...

    async def link_external_id(self, user_id: str, external_id: str) -> UserRecord:
        """
        Attach an external id to a record that has none.

        A record already linked to a different external id is returned
        unchanged; the caller decides whether that is a conflict.

        Raises:
            UniqueViolation: external id already attached to another record
            UserNotFound: no record with ``user_id``
        """
        ...

    async def touch_last_login(self, user_id: str, at: datetime) -> None:
        ...

    async def update(self, user_id: str, **fields: Any) -> UserRecord:
        ...


class InMemoryUserStore:
    """
    In-memory user store.

    Thread-safe implementation for single-instance deployments and tests.

    Usage:
        store = InMemoryUserStore()
        record = await store.create(UserRecord(email="owner@example.com"))
        await store.link_external_id(record.id, "idp-uid-1")
    """

    def __init__(self, records: list[UserRecord] | None = None) -> None:
        self._records: dict[str, UserRecord] = {}
        self._by_external_id: dict[str, str] = {}
        self._by_email: dict[str, str] = {}
        self._lock = threading.RLock()
        for record in records or []:
            self._insert(record)

    @staticmethod
    def _email_key(email: str | None) -> str | None:
        return email.strip().lower() if email else None

    async def get_by_id(self, user_id: str) -> UserRecord | None:
        with self._lock:
            record = self._records.get(user_id)
            return record.model_copy() if record else None

    async def get_by_external_id(self, external_id: str) -> UserRecord | None:
        with self._lock:
            user_id = self._by_external_id.get(external_id)
            return self._records[user_id].model_copy() if user_id else None

    async def get_by_email(self, email: str) -> UserRecord | None:
        key = self._email_key(email)
        if key is None:
            return None
        with self._lock:
            user_id = self._by_email.get(key)
            return self._records[user_id].model_copy() if user_id else None

    async def create(self, record: UserRecord) -> UserRecord:
        with self._lock:
            self._insert(record)
            return record.model_copy()

    async def link_external_id(self, user_id: str, external_id: str) -> UserRecord:
        with self._lock:
            record = self._get_or_raise(user_id)
            if record.external_id is not None:
                return record.model_copy()

            owner = self._by_external_id.get(external_id)
            if owner is not None and owner != user_id:
                raise UniqueViolation("external_id", external_id)

            updated = record.model_copy(update={"external_id": external_id, "updated_at": _now()})
            self._records[user_id] = updated
            self._by_external_id[external_id] = user_id
            return updated.model_copy()

    async def touch_last_login(self, user_id: str, at: datetime) -> None:
        with self._lock:
            record = self._get_or_raise(user_id)
            self._records[user_id] = record.model_copy(update={"last_login_at": at})

    async def update(self, user_id: str, **fields: Any) -> UserRecord:
        with self._lock:
            record = self._get_or_raise(user_id)
            invalid = (set(fields) - set(UserRecord.model_fields)) | (set(fields) & {"id"})
            if invalid:
                raise ValueError(f"Cannot update fields: {sorted(invalid)}")

            updated = UserRecord.model_validate(
                {**record.model_dump(), **fields, "updated_at": _now()}
            )
            self._check_unique(updated, ignore_id=user_id)
            self._unindex(record)
            self._records[user_id] = updated
            self._index(updated)
            return updated.model_copy()

    async def delete(self, user_id: str) -> bool:
        with self._lock:
            record = self._records.pop(user_id, None)
            if record is None:
                return False
            self._unindex(record)
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def snapshot(self) -> list[UserRecord]:
        """Copies of every record (for tests and admin tooling)."""
        with self._lock:
            return [copy.deepcopy(r) for r in self._records.values()]

    def _insert(self, record: UserRecord) -> None:
        """Insert with uniqueness checks (must hold lock)."""
        if record.id in self._records:
            raise UniqueViolation("id", record.id)
        self._check_unique(record, ignore_id=None)
        self._records[record.id] = record.model_copy()
        self._index(record)

    def _check_unique(self, record: UserRecord, ignore_id: str | None) -> None:
        if record.external_id is not None:
            owner = self._by_external_id.get(record.external_id)
            if owner is not None and owner != ignore_id:
                raise UniqueViolation("external_id", record.external_id)
        email_key = self._email_key(record.email)
        if email_key is not None:
            owner = self._by_email.get(email_key)
            if owner is not None and owner != ignore_id:
                raise UniqueViolation("email", record.email or "")

    def _index(self, record: UserRecord) -> None:
        if record.external_id is not None:
            self._by_external_id[record.external_id] = record.id
        email_key = self._email_key(record.email)
        if email_key is not None:
            self._by_email[email_key] = record.id

    def _unindex(self, record: UserRecord) -> None:
        if record.external_id is not None:
            self._by_external_id.pop(record.external_id, None)
        email_key = self._email_key(record.email)
        if email_key is not None:
            self._by_email.pop(email_key, None)

    def _get_or_raise(self, user_id: str) -> UserRecord:
        record = self._records.get(user_id)
        if record is None:
            raise UserNotFound(user_id)
        return record
