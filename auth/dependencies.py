"""
auth/dependencies.py -- FastAPI Depends() helpers that run the request gate.

Only one auth method exists: the Authorization: Bearer <token> header.
Per-IP throttling (stage 1) already ran in the api/main.py middleware by the
time these dependencies execute; they run stages 2-7 through
RequestPipeline.authenticate() and return the typed, frozen RequestContext.

  get_request_context  -- any authenticated identity
  require_access(...)  -- factory for routes that need roles and/or permissions
  require_admin        -- role "admin"

Failures are GateError subclasses, which the api/main.py exception handler
turns into the standard error envelope.

Layer rule: no imports from api/. This module may import from fastapi because
it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from fastapi import Request

from auth.pipeline import AccessRequirement, RequestContext, RequestPipeline


def client_address(request: Request) -> str:
    """Return the remote address used as the IP throttle key."""
    return request.client.host if request.client else "unknown"


def require_access(roles: Iterable[str] = (), permissions: Iterable[str] = ()) -> Callable[[Request], RequestContext]:
    """Build a dependency that admits identities holding any of roles or permissions.

    Use as a FastAPI dependency:
        @router.get("/reports")
        def reports(ctx: RequestContext = Depends(require_access(permissions=["view_reports"]))): ...
    """
    requirement = AccessRequirement.of(roles, permissions)

    def dependency(request: Request) -> RequestContext:
        pipeline: RequestPipeline = request.app.state.pipeline
        return pipeline.authenticate(
            request.headers.get("Authorization"),
            requirement,
            client_address=client_address(request),
        )

    return dependency


get_request_context = require_access()
require_admin = require_access(roles=["admin"])
