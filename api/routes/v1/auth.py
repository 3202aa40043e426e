"""
api/routes/v1/auth.py -- Login, current identity, and second-factor endpoints.

Routes:
  POST /api/v1/auth/login        -- email/password (+ TOTP code) -> bearer token
  GET  /api/v1/auth/me           -- current identity with roles and permissions
  POST /api/v1/auth/2fa/setup    -- start TOTP enrollment (secret + QR code)
  POST /api/v1/auth/2fa/verify   -- confirm a code and enable the second factor

Security:
  POST /login is rate-limited per IP by slowapi (LOGIN_RATE_LIMIT) on top of
  the gate's token buckets.
  authenticate_identity() provides timing equalization -- use it, never inline.
  Wrong email and wrong password share one error ("invalid_credentials").
  Cache-Control: no-store on login responses.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    TwoFactorSetupResponse,
    TwoFactorVerifyRequest,
)
from auth.dependencies import get_request_context
from auth.errors import EmailNotVerified, InvalidCredentials
from auth.pipeline import RequestContext
from auth.store import AccessStore
from auth.tokens import TokenService, authenticate_identity
from auth.twofactor import TwoFactorService
from core.config import get_settings

logger = logging.getLogger("accessgate.api.auth")

# Auth policy:
# - POST /api/v1/auth/login:       public -- the login endpoint must be unauthenticated
# - GET  /api/v1/auth/me:          requires auth (get_request_context)
# - POST /api/v1/auth/2fa/setup:   requires auth (get_request_context)
# - POST /api/v1/auth/2fa/verify:  requires auth (get_request_context)
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(get_settings().login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Exchange credentials (and a TOTP code when 2FA is enabled) for a bearer token.

    Order of checks: credentials, verification flag, second factor. A wrong
    TOTP code therefore only ever reaches a caller who already knows the
    password.
    """
    store: AccessStore = request.app.state.store
    tokens: TokenService = request.app.state.tokens
    twofactor: TwoFactorService = request.app.state.twofactor

    identity = authenticate_identity(store, body.email, body.password)
    if identity is None:
        logger.info("Login failed: bad credentials")
        raise InvalidCredentials()
    if not identity.is_verified:
        raise EmailNotVerified()

    twofactor.challenge(identity, body.two_fa_code)

    token = tokens.issue(identity.id)
    logger.info("Login succeeded identity=%s", identity.id)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=tokens.ttl_seconds,
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(ctx: RequestContext = Depends(get_request_context)) -> MeResponse:
    """Return the caller with its role names and full permission closure."""
    return MeResponse.from_context(ctx.identity)


@router.post("/auth/2fa/setup", response_model=TwoFactorSetupResponse)
def setup_two_factor(request: Request, ctx: RequestContext = Depends(get_request_context)) -> TwoFactorSetupResponse:
    """Generate a TOTP secret and QR code. The secret stays pending until verified."""
    twofactor: TwoFactorService = request.app.state.twofactor
    enrollment = twofactor.setup(ctx.identity.identity)
    return TwoFactorSetupResponse(
        secret=enrollment.secret,
        provisioning_uri=enrollment.provisioning_uri,
        qr_code_url=enrollment.qr_code_url,
    )


@router.post("/auth/2fa/verify", response_model=MessageResponse)
def verify_two_factor(
    request: Request,
    body: TwoFactorVerifyRequest,
    ctx: RequestContext = Depends(get_request_context),
) -> MessageResponse:
    """Confirm a TOTP code and enable two-factor login for the caller."""
    twofactor: TwoFactorService = request.app.state.twofactor
    twofactor.verify(ctx.identity.identity, body.code)
    return MessageResponse(message="Two-factor authentication enabled.")
