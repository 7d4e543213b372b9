"""
Access Control Gate for Review Gatekeeper.

The "Can you do this?" logic - role checks with a fixed hierarchy.

Roles form a dominance order: admin dominates manager, manager dominates
client. A role implicitly holds every role it dominates, so a route
declared for "client" is reachable by admins without every route
enumerating every senior role. team_member sits outside the chain: it is
granted only where a route names it. Inactive dominates nothing.

Zero-trust: If no role in the allowed set is held or dominated, deny.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from review_gatekeeper.audit import SecurityAuditor
from review_gatekeeper.core.errors import AuthorizationError, Stage
from review_gatekeeper.core.identity import Principal, Role

# Direct edges of the hierarchy; the closure below is derived from these.
_DIRECTLY_DOMINATES: dict[Role, frozenset[Role]] = {
    Role.ADMIN: frozenset({Role.MANAGER}),
    Role.MANAGER: frozenset({Role.CLIENT}),
    Role.CLIENT: frozenset(),
    Role.TEAM_MEMBER: frozenset(),
    Role.INACTIVE: frozenset(),
}


def _transitive_closure(edges: dict[Role, frozenset[Role]]) -> dict[Role, frozenset[Role]]:
    closure: dict[Role, frozenset[Role]] = {}
    for role in edges:
        seen: set[Role] = set()
        stack = list(edges[role])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            if current == role:
                raise ValueError(f"Role hierarchy has a cycle through {role.value!r}")
            seen.add(current)
            stack.extend(edges[current])
        closure[role] = frozenset(seen)
    return closure


ROLE_DOMINANCE: dict[Role, frozenset[Role]] = _transitive_closure(_DIRECTLY_DOMINATES)

_missing_roles = set(Role) - set(ROLE_DOMINANCE)
if _missing_roles:
    raise RuntimeError(
        f"Role hierarchy is missing entries for: {sorted(r.value for r in _missing_roles)}"
    )


class Permission(str, Enum):
    """Feature permissions granted by role."""

    MANAGE_USERS = "manage_users"
    MANAGE_BUSINESSES = "manage_businesses"
    MANAGE_REVIEWS = "manage_reviews"
    MANAGE_SUBSCRIPTIONS = "manage_subscriptions"
    VIEW_ANALYTICS = "view_analytics"
    MANAGE_TEAM = "manage_team"
    GENERATE_REPORTS = "generate_reports"


_CLIENT_PERMISSIONS = frozenset(
    {
        Permission.MANAGE_BUSINESSES,
        Permission.MANAGE_REVIEWS,
        Permission.VIEW_ANALYTICS,
        Permission.MANAGE_TEAM,
        Permission.GENERATE_REPORTS,
    }
)

# Default role-permission matrix
DEFAULT_ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.ADMIN: frozenset(Permission),  # All permissions
    Role.MANAGER: _CLIENT_PERMISSIONS,
    Role.CLIENT: _CLIENT_PERMISSIONS,
    Role.TEAM_MEMBER: frozenset(
        {
            Permission.MANAGE_REVIEWS,
            Permission.VIEW_ANALYTICS,
            Permission.GENERATE_REPORTS,
        }
    ),
    Role.INACTIVE: frozenset(),
}


def _as_roles(roles: Iterable[Role | str]) -> frozenset[Role]:
    return frozenset(r if isinstance(r, Role) else Role(r) for r in roles)


def dominates(role: Role | str, other: Role | str) -> bool:
    """Whether ``role`` implicitly holds ``other`` (strictly senior to it)."""
    return Role(other) in ROLE_DOMINANCE[Role(role)]


def authorize(
    role: Role | str,
    allowed: Iterable[Role | str],
    strict: bool = False,
) -> bool:
    """
    Role-hierarchy-aware authorization decision.

    Args:
        role: Role of the principal
        allowed: Roles the resource is declared for
        strict: Only exact membership counts, hierarchy ignored

    Returns:
        True if access is allowed

    Raises:
        ValueError: If a role name is not a known role
    """
    principal_role = Role(role)
    allowed_roles = _as_roles(allowed)

    if principal_role in allowed_roles:
        return True
    if strict:
        return False
    return bool(ROLE_DOMINANCE[principal_role] & allowed_roles)


def has_permission(
    role: Role | str,
    permission: Permission | str,
    matrix: dict[Role, frozenset[Permission]] | None = None,
) -> bool:
    """Check if a role carries a feature permission."""
    table = matrix if matrix is not None else DEFAULT_ROLE_PERMISSIONS
    return Permission(permission) in table.get(Role(role), frozenset())


@dataclass
class AccessDecision:
    """
    Result of an access check.

    Contains the decision and reasoning for audit purposes.
    """

    allowed: bool
    reason: str
    required: list[str] = field(default_factory=list)
    actual: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class AccessGate:
    """
    Authorization gate for authenticated principals.

    Wraps ``authorize`` with audit emission on denial and an ``enforce``
    variant that raises ``AuthorizationError``.

    Usage:
        gate = AccessGate(auditor=auditor)
        gate.enforce(principal, ["admin"], resource="/admin/security/stats")
    """

    def __init__(
        self,
        *,
        auditor: SecurityAuditor | None = None,
        role_permissions: dict[Role, frozenset[Permission]] | None = None,
    ) -> None:
        self._auditor = auditor
        self._role_permissions = role_permissions or dict(DEFAULT_ROLE_PERMISSIONS)

    def check(
        self,
        principal: Principal,
        allowed: Iterable[Role | str],
        *,
        strict: bool = False,
        resource: str | None = None,
    ) -> AccessDecision:
        """Evaluate role access with full decision details."""
        allowed_roles = _as_roles(allowed)
        required = sorted(r.value for r in allowed_roles)

        if principal.role in allowed_roles:
            return AccessDecision(
                allowed=True,
                reason=f"Role {principal.role.value!r} is allowed",
                required=required,
                actual=principal.role.value,
            )

        if not strict:
            implied = ROLE_DOMINANCE[principal.role] & allowed_roles
            if implied:
                return AccessDecision(
                    allowed=True,
                    reason=f"Role {principal.role.value!r} dominates an allowed role",
                    required=required,
                    actual=principal.role.value,
                    metadata={"implied_roles": sorted(r.value for r in implied)},
                )

        decision = AccessDecision(
            allowed=False,
            reason="Insufficient permissions",
            required=required,
            actual=principal.role.value,
            metadata={"strict": strict},
        )
        self._audit_denial(principal, decision, resource)
        return decision

    def check_permission(
        self,
        principal: Principal,
        permission: Permission | str,
        *,
        resource: str | None = None,
    ) -> AccessDecision:
        """Evaluate a feature permission for the principal's role."""
        perm = Permission(permission)
        if perm in self._role_permissions.get(principal.role, frozenset()):
            return AccessDecision(
                allowed=True,
                reason=f"Role {principal.role.value!r} has permission {perm.value!r}",
                required=[perm.value],
                actual=principal.role.value,
            )
        decision = AccessDecision(
            allowed=False,
            reason=f"Missing permission {perm.value!r}",
            required=[perm.value],
            actual=principal.role.value,
        )
        self._audit_denial(principal, decision, resource)
        return decision

    def enforce(
        self,
        principal: Principal,
        allowed: Iterable[Role | str],
        *,
        strict: bool = False,
        resource: str | None = None,
    ) -> AccessDecision:
        """
        Enforce role access.

        Raises:
            AuthorizationError: 403 INSUFFICIENT_PERMISSIONS with required and current roles
        """
        decision = self.check(principal, allowed, strict=strict, resource=resource)
        if not decision.allowed:
            raise AuthorizationError(
                decision.reason,
                required=decision.required,
                current=decision.actual,
                stage=Stage.ACCESS_CONTROL,
            )
        return decision

    def enforce_permission(
        self,
        principal: Principal,
        permission: Permission | str,
        *,
        resource: str | None = None,
    ) -> AccessDecision:
        decision = self.check_permission(principal, permission, resource=resource)
        if not decision.allowed:
            raise AuthorizationError(
                decision.reason,
                required=decision.required,
                current=decision.actual,
                stage=Stage.ACCESS_CONTROL,
            )
        return decision

    def _audit_denial(
        self,
        principal: Principal,
        decision: AccessDecision,
        resource: str | None,
    ) -> None:
        if self._auditor is None:
            return
        self._auditor.log_authz_denied(
            principal,
            required=decision.required,
            reason=decision.reason,
            resource=resource,
        )
