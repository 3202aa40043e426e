"""
api/main.py -- FastAPI application entry point for AccessGate.

Run with:      uvicorn api.main:app --reload

Middleware (Starlette wraps the last registered outermost):
  log_requests          -- one access-log line per response, rejections included
  SlowAPIMiddleware     -- enforces per-route limits from api.limiter (login)
  CORSMiddleware        -- adds CORS headers, answers preflights itself
  TrustedHostMiddleware -- rejects requests with unexpected Host headers
  admit_client          -- gate stage 1, per-IP token bucket

Gate stages 2-7 run inside the route dependencies (auth/dependencies.py).

Lifespan builds the gate's collaborators once and parks them on app.state:
  store, tokens, authz, twofactor, rate_limiter, pipeline.
app.state.limiter is reserved for slowapi.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.authorization import AuthorizationEngine
from auth.dependencies import client_address
from auth.errors import GateError, RateLimited
from auth.pipeline import RequestPipeline
from auth.ratelimit import RateLimiter
from auth.store import AccessStore
from auth.tokens import TokenService
from auth.twofactor import TwoFactorService
from core.config import get_settings

VERSION = "0.1.0"
HEALTH_PATH = "/api/v1/health"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("accessgate.api")

# ---------------------------------------------------------------------------
# Background bucket sweep
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, idle_seconds: int, interval_seconds: int) -> None:
    """Evict full, idle rate-limit buckets every interval_seconds.

    Started only when RATE_LIMIT_IDLE_SECONDS > 0. CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        evicted = app.state.rate_limiter.sweep(idle_seconds)
        if evicted:
            logger.debug("Evicted %d idle rate-limit buckets", evicted)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the gate on startup and release the store on shutdown.

    Startup order follows the dependencies: store first, then the services
    that read it, then the pipeline that ties them together.
    """
    settings = get_settings()
    logger.info("AccessGate API starting up")

    app.state.store = AccessStore(settings.database_url)
    app.state.tokens = TokenService.from_settings(settings)
    app.state.authz = AuthorizationEngine(app.state.store)
    app.state.twofactor = TwoFactorService(app.state.store, issuer=settings.totp_issuer)
    app.state.rate_limiter = RateLimiter.from_settings(settings)
    app.state.pipeline = RequestPipeline(
        app.state.tokens,
        app.state.authz,
        app.state.rate_limiter,
        identity_rate_limit=settings.identity_rate_limit_enabled,
    )
    logger.info(
        "Gate initialized (ip=%s/s burst %d, identity=%s/s burst %d, identity_limit=%s)",
        settings.ip_rate_per_second,
        settings.ip_burst,
        settings.identity_rate_per_second,
        settings.identity_burst,
        settings.identity_rate_limit_enabled,
    )

    app.state.sweep_task = None
    if settings.rate_limit_idle_seconds > 0:
        app.state.sweep_task = asyncio.create_task(
            _sweep_loop(app, settings.rate_limit_idle_seconds, settings.rate_limit_sweep_interval_seconds)
        )

    yield

    if app.state.sweep_task is not None:
        app.state.sweep_task.cancel()
    app.state.store.close()
    logger.info("AccessGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AccessGate API",
    description="Token authentication, TOTP second factor, role/permission authorization and rate limiting.",
    version=VERSION,
    lifespan=lifespan,
)


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


def _gate_error_response(exc: GateError) -> JSONResponse:
    response = _error_response(exc.status_code, exc.code, exc.message)
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(max(1, int(exc.retry_after)))
    return response


# ---------------------------------------------------------------------------
# Middleware stack
#
# Each registration wraps everything registered before it. admit_client is
# registered first so it runs inside TrustedHost and CORS: bad Host headers
# and CORS preflights never reach the bucket, and 429s carry CORS headers.
# ---------------------------------------------------------------------------


# Gate stage 1 -- per-IP throttle.
# Exceptions raised inside an http middleware bypass the exception handlers,
# so the rejection is rendered here directly. The health probe is exempt.
@app.middleware("http")
async def admit_client(request: Request, call_next):
    if request.url.path != HEALTH_PATH:
        try:
            request.app.state.pipeline.admit(client_address(request))
        except RateLimited as exc:
            return _gate_error_response(exc)
    return await call_next(request)


app.add_middleware(TrustedHostMiddleware, allowed_hosts=get_settings().allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        client_address(request),
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(GateError)
async def gate_error_handler(request: Request, exc: GateError) -> JSONResponse:
    """Map a gate outcome to its status code, with Retry-After on 429."""
    return _gate_error_response(exc)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 from the slowapi login limit. slowapi stores the wait on exc.retry_after."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", detail=str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(422, "validation_error", "Request validation failed.", detail=str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable. Exempt from the IP
# throttle: load balancer probes must not be rate limited.
# ---------------------------------------------------------------------------


@app.get(HEALTH_PATH, include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and a database round-trip check."""
    store: AccessStore = request.app.state.store
    try:
        with store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        db_status = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        db_status = "unavailable"
    status = "healthy" if db_status == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, components={"app": "ok", "database": db_status})
