"""
api/routes/v1/users.py -- Read-only user listing.

GET /api/v1/users is open to role "admin" OR anyone holding "manage_users",
the OR-semantics requirement the gate evaluates in stage 6.
"""

from fastapi import APIRouter, Depends, Request

from api.models import UserResponse
from auth.dependencies import require_access
from auth.store import AccessStore

# Auth policy:
# - GET /api/v1/users: role "admin" or permission "manage_users"
router = APIRouter(dependencies=[Depends(require_access(roles=["admin"], permissions=["manage_users"]))])


@router.get("/users", response_model=list[UserResponse])
def list_users(request: Request) -> list[UserResponse]:
    """List all live (not soft-deleted) users, oldest first."""
    store: AccessStore = request.app.state.store
    return [UserResponse.from_identity(identity) for identity in store.list_identities()]
