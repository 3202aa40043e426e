"""
auth/pipeline.py -- Fixed-order authentication/authorization gate for one request.

Stages (each short-circuits on failure; later stages never run):

  1. IP rate check        RateLimiter(ip, client_address)      -> RateLimited
  2. Credential extract   "Authorization: Bearer <token>"       -> Unauthenticated
  3. Token validation     TokenService.validate                 -> Unauthenticated
  4. Identity load        AuthorizationEngine.load_identity     -> Unauthenticated
  5. Identity rate check  RateLimiter(identity, identity.id)    -> RateLimited
  6. Authorization        AccessRequirement (OR over roles/perms) -> Forbidden
  7. Dispatch             frozen RequestContext handed to the route

State progression:
  ENTERED -> IP_CHECKED -> AUTHENTICATED -> IDENTITY_RESOLVED -> RATE_CHECKED
          -> AUTHORIZED -> DISPATCHED
Any stage may end in REJECTED; the raised GateError carries the last state
reached in its .stage attribute.

A token that validates but names a vanished identity is "unauthenticated",
not a server error: the caller simply has no valid session.

In the HTTP app, stage 1 runs for every request (api/main.py middleware via
admit()), stages 2-7 run per protected route (auth/dependencies.py via
authenticate()). process() runs the whole sequence in one call.

Layer rule: no imports from api/ or fastapi.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from auth.authorization import AuthorizationEngine
from auth.errors import (
    Forbidden,
    GateError,
    IdentityNotFound,
    RateLimited,
    TokenExpired,
    TokenMalformed,
    Unauthenticated,
)
from auth.models import IdentityContext
from auth.ratelimit import RateLimiter, Scope
from auth.tokens import TokenService

logger = logging.getLogger("accessgate.auth.pipeline")


class PipelineState(str, Enum):
    ENTERED = "entered"
    IP_CHECKED = "ip_checked"
    AUTHENTICATED = "authenticated"
    IDENTITY_RESOLVED = "identity_resolved"
    RATE_CHECKED = "rate_checked"
    AUTHORIZED = "authorized"
    DISPATCHED = "dispatched"
    REJECTED = "rejected"


@dataclass(frozen=True)
class AccessRequirement:
    """What a route accepts: any listed role OR any listed permission.

    An empty requirement accepts every authenticated identity.
    """

    roles: frozenset[str] = frozenset()
    permissions: frozenset[str] = frozenset()

    @classmethod
    def of(cls, roles: Iterable[str] = (), permissions: Iterable[str] = ()) -> AccessRequirement:
        return cls(roles=frozenset(roles), permissions=frozenset(permissions))

    @property
    def is_open(self) -> bool:
        return not self.roles and not self.permissions


@dataclass(frozen=True)
class RequestContext:
    """The resolved caller, attached to a request once the gate lets it through."""

    identity: IdentityContext
    client_address: str
    state: PipelineState = PipelineState.DISPATCHED


def extract_bearer_token(authorization: str | None) -> str:
    """Return the token from an "Authorization: Bearer <token>" header value.

    Exactly two space-separated parts with the scheme "Bearer" are accepted.
    """
    if not authorization:
        raise Unauthenticated("Authorization header is required.")
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        raise Unauthenticated("Invalid authorization format.")
    return parts[1]


class RequestPipeline:
    """Runs the gate stages for one inbound request.

    Owns the RateLimiter instance; construct once at startup and share.
    """

    def __init__(
        self,
        tokens: TokenService,
        engine: AuthorizationEngine,
        limiter: RateLimiter,
        identity_rate_limit: bool = True,
    ) -> None:
        self.tokens = tokens
        self.engine = engine
        self.limiter = limiter
        self.identity_rate_limit = identity_rate_limit

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def admit(self, client_address: str) -> PipelineState:
        """Stage 1: per-IP throttle. Applies to every request."""
        if not self.limiter.allow(Scope.IP, client_address):
            raise _rejected(
                RateLimited(
                    "IP rate limit exceeded.",
                    retry_after=self.limiter.retry_after(Scope.IP, client_address),
                ),
                PipelineState.ENTERED,
            )
        return PipelineState.IP_CHECKED

    def authenticate(
        self,
        authorization: str | None,
        requirement: AccessRequirement = AccessRequirement(),
        client_address: str = "unknown",
    ) -> RequestContext:
        """Stages 2-7 for a request that has already passed admit()."""
        state = PipelineState.IP_CHECKED
        try:
            token = extract_bearer_token(authorization)
            try:
                subject = self.tokens.validate(token)
            except (TokenMalformed, TokenExpired) as exc:
                raise Unauthenticated(exc.message) from exc
            state = PipelineState.AUTHENTICATED

            try:
                ctx = self.engine.load_identity(subject)
            except IdentityNotFound as exc:
                raise Unauthenticated("User not found.") from exc
            state = PipelineState.IDENTITY_RESOLVED

            if self.identity_rate_limit and not self.limiter.allow(Scope.IDENTITY, ctx.id):
                raise RateLimited(
                    "User rate limit exceeded.",
                    retry_after=self.limiter.retry_after(Scope.IDENTITY, ctx.id),
                )
            state = PipelineState.RATE_CHECKED

            if not self._satisfies(ctx, requirement):
                raise Forbidden()
            state = PipelineState.AUTHORIZED
        except GateError as exc:
            _rejected(exc, state)
            raise

        return RequestContext(identity=ctx, client_address=client_address, state=PipelineState.DISPATCHED)

    def process(
        self,
        client_address: str,
        authorization: str | None,
        requirement: AccessRequirement = AccessRequirement(),
    ) -> RequestContext:
        """Run every stage, 1 through 7, for one request."""
        self.admit(client_address)
        return self.authenticate(authorization, requirement, client_address)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _satisfies(self, ctx: IdentityContext, requirement: AccessRequirement) -> bool:
        if requirement.is_open:
            return True
        return self.engine.authorize_any_role(ctx, requirement.roles) or self.engine.authorize_any_permission(
            ctx, requirement.permissions
        )


def _rejected(exc: GateError, stage: PipelineState) -> GateError:
    exc.stage = stage
    logger.info("Request rejected at %s: %s", stage.value, exc.code)
    return exc
