"""
auth/authorization.py -- Identity closure loading and RBAC decisions.

RBAC model: permissions are granted to roles, roles to identities. There is
no direct identity->permission grant, so an identity's effective permissions
are exactly the union of its roles' permissions (IdentityContext.permission_names).

Multi-value checks use OR semantics: authorize_any_role(ctx, ["admin", "manager"])
passes if the identity holds either role. A route that needs several
capabilities at once declares the most specific one instead.

Decisions are evaluated against the per-request IdentityContext snapshot.
Cost is O(roles x permissions-per-role); nothing is cached across requests.

Policy helpers (authorize / authorize_view / ...) map an action on a module to
the "<action>_<module>" permission naming convention and raise Forbidden.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    AlreadyHasRole,
    DuplicateName,
    Forbidden,
    IdentityNotFound,
    PermissionNotFound,
    RoleNotFound,
)
from auth.models import IdentityContext, Permission, Role, RoleGrant
from auth.store import AccessStore

logger = logging.getLogger("accessgate.auth.authorization")


class AuthorizationEngine:
    """Builds identity snapshots and answers "may this identity do X" questions.

    Usage:
        engine = AuthorizationEngine(store)
        ctx = engine.load_identity(identity_id)
        if engine.authorize_any_role(ctx, ["admin"]): ...
    """

    def __init__(self, store: AccessStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Closure
    # ------------------------------------------------------------------

    def load_identity(self, identity_id: str) -> IdentityContext:
        """Return the identity with its roles and their permissions, eagerly.

        Raises IdentityNotFound if no live identity has this id.
        """
        closure = self.store.load_closure(identity_id)
        if closure is None:
            raise IdentityNotFound()
        identity, roles = closure
        grants = tuple(
            RoleGrant(name=role.name, permissions=frozenset(p.name for p in permissions))
            for role, permissions in roles
        )
        return IdentityContext(identity=identity, roles=grants)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    @staticmethod
    def has_role(ctx: IdentityContext, role_name: str) -> bool:
        return any(grant.name == role_name for grant in ctx.roles)

    @staticmethod
    def has_permission(ctx: IdentityContext, permission_name: str) -> bool:
        return any(permission_name in grant.permissions for grant in ctx.roles)

    def authorize_any_role(self, ctx: IdentityContext, required_roles: Iterable[str]) -> bool:
        """True if the identity holds at least one of required_roles."""
        return any(self.has_role(ctx, name) for name in required_roles)

    def authorize_any_permission(self, ctx: IdentityContext, required_permissions: Iterable[str]) -> bool:
        """True if the identity holds at least one of required_permissions."""
        return any(self.has_permission(ctx, name) for name in required_permissions)

    # ------------------------------------------------------------------
    # Policy helpers
    # ------------------------------------------------------------------

    def authorize(self, ctx: IdentityContext, action: str, module: str) -> None:
        """Raise Forbidden unless the identity holds the "<action>_<module>" permission."""
        permission_name = f"{action}_{module}"
        if not self.has_permission(ctx, permission_name):
            raise Forbidden(f"Missing permission: {permission_name}")

    def authorize_view(self, ctx: IdentityContext, module: str) -> None:
        self.authorize(ctx, "view", module)

    def authorize_create(self, ctx: IdentityContext, module: str) -> None:
        self.authorize(ctx, "create", module)

    def authorize_edit(self, ctx: IdentityContext, module: str) -> None:
        self.authorize(ctx, "edit", module)

    def authorize_delete(self, ctx: IdentityContext, module: str) -> None:
        self.authorize(ctx, "delete", module)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def create_role(self, name: str) -> Role:
        """Create a role. Re-creating an existing name raises DuplicateName."""
        try:
            role = self.store.create_role(name)
        except IntegrityError as exc:
            raise DuplicateName(f"Role '{name}' already exists.") from exc
        logger.info("Role created name=%s", name)
        return role

    def create_permission(self, name: str) -> Permission:
        """Create a permission. Re-creating an existing name raises DuplicateName."""
        try:
            permission = self.store.create_permission(name)
        except IntegrityError as exc:
            raise DuplicateName(f"Permission '{name}' already exists.") from exc
        logger.info("Permission created name=%s", name)
        return permission

    def assign_role(self, identity_id: str, role_name: str) -> None:
        """Grant role_name to an identity.

        Assigning a role the identity already holds is rejected with
        AlreadyHasRole and leaves the role set unchanged. The edge table's
        composite key catches the case where two requests race past the
        has_role() check.
        """
        ctx = self.load_identity(identity_id)
        role = self.store.find_role_by_name(role_name)
        if role is None:
            raise RoleNotFound(f"Role '{role_name}' not found.")
        if self.has_role(ctx, role_name):
            raise AlreadyHasRole()
        if not self.store.append_role_to_identity(identity_id, role.id):
            raise AlreadyHasRole()
        logger.info("Role assigned identity=%s role=%s", identity_id, role_name)

    def assign_permission(self, role_name: str, permission_name: str) -> None:
        """Grant permission_name to role_name. Already-present grants are a no-op."""
        role = self.store.find_role_by_name(role_name)
        if role is None:
            raise RoleNotFound(f"Role '{role_name}' not found.")
        permission = self.store.find_permission_by_name(permission_name)
        if permission is None:
            raise PermissionNotFound(f"Permission '{permission_name}' not found.")
        if self.store.append_permission_to_role(role.id, permission.id):
            logger.info("Permission assigned role=%s permission=%s", role_name, permission_name)
