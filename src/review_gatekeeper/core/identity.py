"""
Identity Models for Review Gatekeeper.

Defines the closed role enumeration and the Principal attached to every
authenticated request. A Principal is built fresh per request by the
identity reconciler and is read-only to handlers.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class Role(str, Enum):
    """Roles a user record can hold."""

    ADMIN = "admin"
    MANAGER = "manager"
    CLIENT = "client"  # business owner
    TEAM_MEMBER = "team_member"
    INACTIVE = "inactive"

    @classmethod
    def _missing_(cls, value: object) -> Role | None:
        """Accept legacy spellings and stray whitespace/case."""
        if not isinstance(value, str):
            return None
        normalized = value.strip().lower()
        if normalized == "business_owner":
            return cls.CLIENT
        for member in cls:
            if member.value == normalized:
                return member
        return None


class Principal(BaseModel):
    """
    Authenticated actor attached to a request.

    Carries both identities: ``user_id`` is the internal record id used for
    every data-ownership check, ``external_id`` is the identity provider UID
    used for calls back to the provider (logout, revocation).
    """

    model_config = {"frozen": True}

    user_id: str = Field(..., description="Internal user record id")
    external_id: str = Field(..., description="Identity provider UID")
    email: str | None = Field(default=None, description="Email address")
    role: Role = Field(default=Role.CLIENT, description="Assigned role")
    email_verified: bool = Field(default=False)
    last_login_at: datetime | None = Field(default=None)
    ip: str | None = Field(default=None, description="Originating client key")
    user_agent: str | None = Field(default=None)
    authenticated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def principal_id(self) -> str:
        """Principal id is the internal user id."""
        return self.user_id

    @property
    def is_authenticated(self) -> bool:
        return True

    @property
    def is_active(self) -> bool:
        return self.role != Role.INACTIVE
