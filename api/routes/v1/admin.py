"""
api/routes/v1/admin.py -- Role, permission and user administration.

Routes (all require role "admin"):
  POST /api/v1/admin/users              -- create an identity
  POST /api/v1/admin/users/{id}/verify  -- mark an identity verified so it can log in
  POST /api/v1/admin/roles              -- create a role (409 on duplicate name)
  GET  /api/v1/admin/roles              -- list roles with their permissions
  POST /api/v1/admin/permissions        -- create a permission (409 on duplicate name)
  POST /api/v1/admin/assign-role        -- grant a role to an identity (409 if already held)
  POST /api/v1/admin/assign-permission  -- grant a permission to a role (no-op if present)

The AuthorizationEngine raises GateError subclasses (DuplicateName,
RoleNotFound, AlreadyHasRole, ...) which api/main.py maps to status codes.
Handlers stay straight-line.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    AssignPermissionRequest,
    AssignRoleRequest,
    MessageResponse,
    PermissionCreate,
    PermissionResponse,
    RoleCreate,
    RoleResponse,
    UserCreate,
    UserResponse,
)
from auth.authorization import AuthorizationEngine
from auth.dependencies import require_admin
from auth.errors import DuplicateName, IdentityNotFound
from auth.models import Identity
from auth.store import AccessStore
from auth.tokens import hash_password

# Auth policy:
# - every route: role "admin" (router-level dependency; handlers do not repeat it)
router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(request: Request, body: UserCreate) -> UserResponse:
    """Create an identity with no roles. Duplicate email -> 409."""
    store: AccessStore = request.app.state.store
    identity = Identity(
        email=body.email,
        name=body.name,
        hashed_password=hash_password(body.password),
        is_verified=body.is_verified,
    )
    try:
        identity_id = store.create_identity(identity)
    except IntegrityError as exc:
        raise DuplicateName("A user with that email already exists.") from exc

    created = store.find_identity_by_id(identity_id)
    if created is None:
        raise IdentityNotFound("User not found after write.")
    return UserResponse.from_identity(created)


@router.post("/users/{user_id}/verify", response_model=UserResponse)
def verify_user(request: Request, user_id: str) -> UserResponse:
    """Mark an identity verified. Repeating it is harmless. Unknown id -> 404."""
    store: AccessStore = request.app.state.store
    if not store.mark_identity_verified(user_id):
        raise IdentityNotFound()
    verified = store.find_identity_by_id(user_id)
    if verified is None:
        raise IdentityNotFound()
    return UserResponse.from_identity(verified)


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(request: Request, body: RoleCreate) -> RoleResponse:
    engine: AuthorizationEngine = request.app.state.authz
    return RoleResponse.from_role(engine.create_role(body.name))


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(request: Request) -> list[RoleResponse]:
    store: AccessStore = request.app.state.store
    return [RoleResponse.from_role(role, permissions) for role, permissions in store.list_roles()]


@router.post("/permissions", response_model=PermissionResponse, status_code=201)
def create_permission(request: Request, body: PermissionCreate) -> PermissionResponse:
    engine: AuthorizationEngine = request.app.state.authz
    return PermissionResponse.from_permission(engine.create_permission(body.name))


@router.post("/assign-role", response_model=MessageResponse)
def assign_role(request: Request, body: AssignRoleRequest) -> MessageResponse:
    """Grant a role. Takes effect on the identity's next request."""
    engine: AuthorizationEngine = request.app.state.authz
    engine.assign_role(body.user_id, body.role)
    return MessageResponse(message="Role assigned successfully.")


@router.post("/assign-permission", response_model=MessageResponse)
def assign_permission(request: Request, body: AssignPermissionRequest) -> MessageResponse:
    engine: AuthorizationEngine = request.app.state.authz
    engine.assign_permission(body.role_name, body.permission_name)
    return MessageResponse(message="Permission assigned to role successfully.")
