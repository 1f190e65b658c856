"""
api/main.py -- FastAPI application entry point for VaultPass.

Exposes the account-security core (auth.service.AuthService) over HTTP. The
routes are a thin transport layer: they resolve the caller's Principal,
call one service method, and map the result to a response model.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (stores, dispatcher, service, session sweep task)
and shutdown (cancel sweep task, drain dispatcher, close stores)
symmetrically.
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
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.security import router as security_router
from api.routes.v1.sessions import router as sessions_router
from api.routes.v1.two_factor import router as two_factor_router
from audit.store import SecurityEventLog
from auth.service import AuthService
from auth.store import UserStore
from cache.store import LocationCache
from core.background import TaskDispatcher
from core.config import Settings, get_settings
from core.errors import (
    AccountLocked,
    ActionTokenInvalid,
    AuthenticationFailure,
    Forbidden,
    NotFound,
    PolicyViolation,
    SystemFailure,
    TokenFailure,
    VaultPassError,
)
from core.geolocation import LocationResolver
from core.notifier import build_notifier
from risk.engine import RiskEngine
from sessions.store import SessionRegistry

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("vaultpass.api")

SWEEP_INTERVAL_SECONDS = 15 * 60

# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_state(app: FastAPI, settings: Settings, *, cache: LocationCache, dispatcher: TaskDispatcher) -> None:
    """Construct the stores and the service and attach them to app.state.

    Split out of lifespan so tests can wire the same graph over in-memory
    databases with an inline dispatcher.
    """
    resolver = LocationResolver(settings.geo_lookup_url, timeout=settings.geo_timeout_seconds, cache=cache)
    users = UserStore(db_url=settings.database_url)
    sessions = SessionRegistry(db_url=settings.database_url)
    events = SecurityEventLog(db_url=settings.database_url, resolver=resolver, dispatcher=dispatcher)
    risk = RiskEngine(
        events,
        resolver=resolver if resolver.enabled else None,
        login_threshold=settings.login_risk_threshold,
        password_change_threshold=settings.password_change_risk_threshold,
    )
    app.state.cache = cache
    app.state.dispatcher = dispatcher
    app.state.user_store = users
    app.state.session_registry = sessions
    app.state.event_log = events
    app.state.auth_service = AuthService.from_settings(
        settings,
        users=users,
        sessions=sessions,
        events=events,
        risk=risk,
        notifier=build_notifier(settings),
        dispatcher=dispatcher,
    )


def close_state(app: FastAPI) -> None:
    app.state.dispatcher.shutdown(wait=True)
    app.state.event_log.close()
    app.state.session_registry.close()
    app.state.user_store.close()
    app.state.cache.close()


# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI) -> None:
    """Deactivate expired sessions and trim the location cache every 15 minutes.

    The blocking store calls run in a worker thread so the event loop stays
    free. CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(SWEEP_INTERVAL_SECONDS)
        try:
            swept = await asyncio.to_thread(app.state.auth_service.sweep_expired_sessions)
            purged = await asyncio.to_thread(app.state.cache.purge_expired)
        except SQLAlchemyError:
            logger.warning("Session sweep failed", exc_info=True)
            continue
        if swept or purged:
            logger.info("Sweep: %d expired session(s) deactivated, %d cache entries purged", swept, purged)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Settings first -- a missing signing key fails here, before any store
         opens a database file.
      2. Cache and dispatcher -- the event log schedules location lookups on
         the dispatcher, and the resolver reads through the cache.
      3. Stores and service.
      4. Sweep task last -- references app.state.auth_service.
    """
    # Startup
    logger.info("VaultPass API starting up")
    settings = get_settings()
    build_state(
        app,
        settings,
        cache=LocationCache(ttl=settings.geo_cache_ttl_seconds),
        dispatcher=TaskDispatcher(max_workers=settings.background_workers),
    )
    logger.info(
        "Auth initialized (geolocation=%s, smtp=%s)",
        "on" if settings.geo_lookup_url else "off",
        "on" if settings.smtp_host else "off",
    )
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app))

    yield

    # Shutdown
    app.state.sweep_task.cancel()
    close_state(app)
    logger.info("VaultPass API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="VaultPass API",
    description="Account security: credentials, two-factor, risk scoring, tokens, sessions and audit trail.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
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
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(two_factor_router, prefix="/api/v1", tags=["Two-Factor"])
app.include_router(sessions_router, prefix="/api/v1", tags=["Sessions"])
app.include_router(security_router, prefix="/api/v1", tags=["Security"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


def status_for(exc: VaultPassError) -> int:
    """Map the core exception taxonomy to an HTTP status. Order matters:
    subclasses with their own status are checked before their base."""
    if isinstance(exc, (AccountLocked, Forbidden)):
        return 403
    if isinstance(exc, ActionTokenInvalid):
        return 400
    if isinstance(exc, (AuthenticationFailure, TokenFailure)):
        return 401
    if isinstance(exc, PolicyViolation):
        return 400
    if isinstance(exc, NotFound):
        return 404
    return 500


@app.exception_handler(VaultPassError)
async def vaultpass_error_handler(request: Request, exc: VaultPassError) -> JSONResponse:
    status_code = status_for(exc)
    if isinstance(exc, SystemFailure) or status_code == 500:
        # The message may name internals; the client gets the generic one.
        logger.error("System failure on %s %s: %s", request.method, request.url.path, exc.message)
        return _error(500, SystemFailure.code, SystemFailure.message)
    response = _error(status_code, exc.code, exc.message, exc.detail)
    if status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit applied -- health checks from load balancers and monitoring
# systems must not be throttled.
# ---------------------------------------------------------------------------


@limiter.exempt
@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and a database round trip."""
    try:
        request.app.state.user_store.has_users()
        database = "ok"
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable", exc_info=True)
        database = "error"
    return HealthResponse(version=__version__, components={"app": "ok", "database": database})
