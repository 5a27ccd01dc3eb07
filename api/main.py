"""
api/main.py -- FastAPI application entry point for the Bookshelf auth service.

Exposes passkey registration, login, device management, setup links and
invitations over HTTP for the Bookshelf browser client.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for the configured origin
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (credential store, challenge cache, relying party,
maintenance task) and shutdown (cancel task, close stores) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.links import router as links_router
from api.routes.v1.passkeys import router as passkeys_router
from auth.authentication import AuthenticationCeremony
from auth.devices import DeviceManager
from auth.errors import AuthError
from auth.registration import RegistrationCeremony
from auth.relying_party import RelyingParty
from auth.store import CredentialStore
from cache.store import RevokedTokens, build_challenge_cache
from core.config import get_settings

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("bookshelf.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background maintenance task
# ---------------------------------------------------------------------------


async def _maintenance_loop(app: FastAPI) -> None:
    """Sweep expired challenges and revoked-token entries; periodically purge stale link tokens.

    The sweep runs every challenge_sweep_interval_seconds. Token retention
    cleanup runs when token_cleanup_interval_seconds has elapsed since the
    last one. A failing tick is logged and the loop carries on; only
    CancelledError from task.cancel() during shutdown ends it.
    """
    last_cleanup = time.monotonic()
    retention = timedelta(days=_settings.token_retention_days)
    while True:
        await asyncio.sleep(_settings.challenge_sweep_interval_seconds)
        try:
            app.state.challenges.purge_expired()
            app.state.revoked_tokens.purge_expired()
            if time.monotonic() - last_cleanup >= _settings.token_cleanup_interval_seconds:
                last_cleanup = time.monotonic()
                await asyncio.to_thread(app.state.store.purge_stale_tokens, retention)
        except Exception:
            logger.exception("Maintenance sweep failed; retrying next interval")


def _wire_services(app: FastAPI, store: CredentialStore, relying_party: RelyingParty) -> None:
    """Build the ceremony services on top of the stores already on app.state."""
    app.state.store = store
    app.state.registration = RegistrationCeremony(store, app.state.challenges, relying_party)
    app.state.authentication = AuthenticationCeremony(store, app.state.challenges, relying_party)
    app.state.devices = DeviceManager(
        store,
        app.state.challenges,
        relying_party,
        app_url=_settings.app_url,
        setup_ttl=timedelta(seconds=_settings.setup_token_ttl_seconds),
        invitation_ttl=timedelta(seconds=_settings.invitation_ttl_seconds),
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Challenge cache and revocation list -- the services hold references.
      2. Credential store and relying party, then the ceremony services.
      3. Maintenance task last -- it touches everything above.
    """
    logger.info("Bookshelf auth API starting up (rp_id=%s)", _settings.rp_id)
    app.state.challenges = build_challenge_cache(
        _settings.challenge_cache_url,
        ttl=_settings.challenge_ttl_seconds,
    )
    app.state.revoked_tokens = RevokedTokens()
    _wire_services(app, CredentialStore(_settings.database_url), RelyingParty.from_settings(_settings))
    logger.info("Auth initialized (has_users=%s)", app.state.store.has_users())
    app.state.maintenance_task = asyncio.create_task(_maintenance_loop(app))

    yield

    app.state.maintenance_task.cancel()
    app.state.challenges.close()
    app.state.store.close()
    logger.info("Bookshelf auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Bookshelf Auth API",
    description="Passkey (WebAuthn) authentication for Bookshelf.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current stack, so the LAST one registered is the
# outermost. Registered innermost-first so a request meets
# TrustedHost -> CORS -> SlowAPI. log_requests (below) wraps all of them.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

app.add_middleware(
    CORSMiddleware,
    allow_origins=[_settings.cors_origin],
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

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

app.include_router(auth_router, prefix="/api", tags=["Auth"])
app.include_router(passkeys_router, prefix="/api", tags=["Passkeys"])
app.include_router(links_router, prefix="/api", tags=["Setup links and invitations"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so the client can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render any auth-layer failure with its own status and code.

    The message is client-safe by construction; internal detail was logged
    where the error was raised.
    """
    response = _error(exc.status_code, exc.code, exc.message)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with structured error when the request body fails validation."""
    return _error(400, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for FastAPI/Starlette HTTP exceptions (404 routes, 405 methods)."""
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit applied -- health checks from load balancers must not be
# throttled.
# ---------------------------------------------------------------------------


@app.get("/api/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=API_VERSION)
