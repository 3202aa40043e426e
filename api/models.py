"""
API request and response models for AccessGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Identity, IdentityContext, Permission, Role
from auth.tokens import MAX_PASSWORD_BYTES, password_fits

# Permission names follow "<action>_<module>"; role names are free-form but
# restricted to the same safe character set.
NAME_PATTERN = r"^[A-Za-z0-9_.-]+$"
# Shape check only; deliverability is not the gate's concern.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+$"


def _check_password_bytes(value: str) -> str:
    if not password_fits(value):
        raise ValueError(f"must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded")
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=100, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=MAX_PASSWORD_BYTES)
    two_fa_code: Optional[str] = Field(default=None, max_length=10)

    @field_validator("password")
    @classmethod
    def password_within_bcrypt_limit(cls, value: str) -> str:
        return _check_password_bytes(value)


class TwoFactorVerifyRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=6, max_length=10)


class UserCreate(BaseModel):
    """Request body for POST /api/v1/admin/users."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=100, pattern=EMAIL_PATTERN)
    name: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=6, max_length=MAX_PASSWORD_BYTES)
    is_verified: bool = True

    @field_validator("password")
    @classmethod
    def password_within_bcrypt_limit(cls, value: str) -> str:
        return _check_password_bytes(value)


class RoleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100, pattern=NAME_PATTERN)


class PermissionCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100, pattern=NAME_PATTERN)


class AssignRoleRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=26)
    role: str = Field(min_length=1, max_length=100)


class AssignPermissionRequest(BaseModel):
    role_name: str = Field(min_length=1, max_length=100)
    permission_name: str = Field(min_length=1, max_length=100)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: str
    is_verified: bool
    is_two_fa_enabled: bool
    created_at: str

    @classmethod
    def from_identity(cls, identity: Identity) -> "UserResponse":
        return cls(
            id=identity.id,
            email=identity.email,
            name=identity.name,
            is_verified=identity.is_verified,
            is_two_fa_enabled=identity.is_twofa_enabled,
            created_at=identity.created_at or "",
        )


class MeResponse(UserResponse):
    """GET /api/v1/auth/me -- the caller plus its role/permission closure."""

    roles: list[str]
    permissions: list[str]

    @classmethod
    def from_context(cls, ctx: IdentityContext) -> "MeResponse":
        base = UserResponse.from_identity(ctx.identity).model_dump()
        return cls(**base, roles=sorted(ctx.role_names), permissions=sorted(ctx.permission_names))


class TwoFactorSetupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    secret: str
    provisioning_uri: str
    qr_code_url: str


class PermissionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    created_at: str

    @classmethod
    def from_permission(cls, permission: Permission) -> "PermissionResponse":
        return cls(id=permission.id, name=permission.name, created_at=permission.created_at or "")


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    created_at: str
    permissions: list[str] = []

    @classmethod
    def from_role(cls, role: Role, permissions: Optional[list[Permission]] = None) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            created_at=role.created_at or "",
            permissions=[p.name for p in permissions or []],
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = {}
