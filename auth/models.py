"""
auth/models.py -- Domain dataclasses for authentication and RBAC entities.

Pattern: Data class (pure data container, zero logic) for the persisted
entities; the store and the engine do the work. Relationships are NOT embedded
as object references: identity->role and role->permission edges live in the
store's edge tables and are resolved by lookup (auth/store.load_closure).

IdentityContext / RoleGrant are the exception: they are the frozen,
per-request snapshot the AuthorizationEngine builds from those edges.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class Identity:
    """A user account.

    id is a ULID string (26 chars, lexicographically sortable by creation
    time) assigned by the store on insert; None before the first write.

    Second factor state is split in two:
      pending_twofa_secret -- written by TwoFactorService.setup(), never used
                              to authenticate a login.
      twofa_secret         -- the confirmed secret, promoted from the pending
                              slot once verify() proves possession.

    deleted_at is the soft-delete marker. Soft-deleted identities are never
    returned by store lookups.
    """

    email: str
    name: str
    id: str | None = None
    hashed_password: str | None = None
    is_verified: bool = False
    twofa_secret: str | None = None
    pending_twofa_secret: str | None = None
    is_twofa_enabled: bool = False
    created_at: str | None = None
    updated_at: str | None = None
    deleted_at: str | None = None


@dataclass
class Role:
    name: str
    id: str | None = None
    created_at: str | None = None


@dataclass
class Permission:
    """A named capability, conventionally "<action>_<module>" (e.g. "view_reports")."""

    name: str
    id: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class RoleGrant:
    """One assigned role with the names of the permissions it carries."""

    name: str
    permissions: frozenset[str] = frozenset()


@dataclass(frozen=True)
class IdentityContext:
    """Read-only snapshot of an identity and its role/permission closure.

    Built once per request by AuthorizationEngine.load_identity(). Role or
    permission changes made after the snapshot was taken are seen by the next
    request, not this one.
    """

    identity: Identity
    roles: tuple[RoleGrant, ...] = ()

    @property
    def id(self) -> str:
        return self.identity.id

    @property
    def role_names(self) -> frozenset[str]:
        return frozenset(grant.name for grant in self.roles)

    @property
    def permission_names(self) -> frozenset[str]:
        """The permission closure: union of permissions over all assigned roles."""
        names: set[str] = set()
        for grant in self.roles:
            names |= grant.permissions
        return frozenset(names)
