"""
auth/seed.py -- Idempotent bootstrap data for a fresh database.

seed_roles_and_permissions() creates the default permissions and roles and
grants every default permission to "admin". create_admin() creates a verified
identity holding the "admin" role. Both are find-or-create, so running them
against an already seeded database changes nothing.

Called from the main.py CLI; never from request handling.
"""

from __future__ import annotations

import logging

from auth.authorization import AuthorizationEngine
from auth.errors import DuplicateName
from auth.models import Identity
from auth.store import AccessStore
from auth.tokens import hash_password

logger = logging.getLogger("accessgate.auth.seed")

DEFAULT_PERMISSIONS = ("manage_users", "manage_roles", "view_reports")
DEFAULT_ROLES = ("admin", "user", "manager")
ADMIN_ROLE = "admin"


def seed_roles_and_permissions(store: AccessStore) -> None:
    engine = AuthorizationEngine(store)

    for name in DEFAULT_PERMISSIONS:
        if store.find_permission_by_name(name) is None:
            try:
                engine.create_permission(name)
            except DuplicateName:
                logger.info("Permission %s created concurrently, skipping", name)

    for name in DEFAULT_ROLES:
        if store.find_role_by_name(name) is None:
            try:
                engine.create_role(name)
            except DuplicateName:
                logger.info("Role %s created concurrently, skipping", name)

    for name in DEFAULT_PERMISSIONS:
        engine.assign_permission(ADMIN_ROLE, name)

    logger.info("Roles and permissions seeded")


def create_admin(store: AccessStore, email: str, name: str, password: str) -> str:
    """Create (or reuse) a verified identity and make sure it holds "admin".

    Returns the identity id. The password of an existing identity is left
    untouched.
    """
    identity = store.find_identity_by_email(email)
    if identity is None:
        identity_id = store.create_identity(
            Identity(
                email=email,
                name=name,
                hashed_password=hash_password(password),
                is_verified=True,
            )
        )
        logger.info("Admin identity created email=%s", email)
    else:
        identity_id = identity.id

    if store.find_role_by_name(ADMIN_ROLE) is None:
        seed_roles_and_permissions(store)
    engine = AuthorizationEngine(store)
    if not engine.has_role(engine.load_identity(identity_id), ADMIN_ROLE):
        engine.assign_role(identity_id, ADMIN_ROLE)
    return identity_id
