"""
api/main.py -- FastAPI application entry point for FlowForge accounts.

Run with:  uvicorn asgi:app --reload

Requests pass through, outermost first (Starlette wraps the last added
middleware around the others):
  1. log_requests          -- method, path, status and latency
  2. SlowAPIMiddleware     -- the @limiter.limit() decorators on login-style routes
  3. CORSMiddleware        -- browser origins allowed to send credentials
  4. TrustedHostMiddleware -- Host header allow-list

Lifespan builds the store and the services on app.state at startup, starts
the token purge task, and tears everything down symmetrically on shutdown.
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
from auth.api_keys import ApiKeyManager
from auth.errors import AuthError, Denied, Unauthenticated
from auth.policy import default_gate
from auth.sessions import SessionService
from auth.store import AccountStore
from auth.strategies import Authenticator
from core.config import get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("flowforge.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def install_services(app: FastAPI, store: AccountStore, sessions: SessionService | None = None) -> None:
    """Attach the store and every service built on it to app.state.

    Tests call this with an isolated store (and a recording sender) instead
    of running the real lifespan.
    """
    sessions = sessions or SessionService(store)
    api_keys = ApiKeyManager(store)
    app.state.store = store
    app.state.sessions = sessions
    app.state.api_keys = api_keys
    app.state.gate = default_gate()
    app.state.authenticator = Authenticator.default(sessions, api_keys)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval_seconds: int) -> None:
    """Delete expired token records every interval_seconds.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine. A failed purge is logged and
    retried on the next tick.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(app.state.sessions.purge_expired)
        except SQLAlchemyError:
            logger.exception("Token purge failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Everything before yield runs on startup; everything after on shutdown."""
    settings = get_settings()
    logger.info("FlowForge accounts API starting up")
    install_services(app, AccountStore(settings.database_url))
    logger.info("Account store initialized")
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.token_purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    app.state.store.close()
    logger.info("FlowForge accounts API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="FlowForge Accounts API",
    description="Users, sessions, API keys and policy-gated account actions.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost", "testserver"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:4000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key"],
    allow_credentials=True,
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error body is {"error": {"code", "message", "detail"}}, whatever the
# status code.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(Unauthenticated)
async def unauthenticated_handler(request: Request, exc: Unauthenticated) -> JSONResponse:
    """Every authentication failure looks the same to the client.

    The concrete subclass (expired, revoked, unknown key, ...) is logged at
    DEBUG only, so responses cannot be used to probe which credential
    property failed.
    """
    logger.debug("Authentication failed on %s: %s", request.url.path, exc.code)
    response = _error(401, Unauthenticated.code, Unauthenticated.message)
    response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(Denied)
async def denied_handler(request: Request, exc: Denied) -> JSONResponse:
    return _error(exc.status_code, exc.code, exc.message, detail=exc.reason)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """ValidationError, Conflict, NotFound and any other taxonomy member."""
    return _error(exc.status_code, exc.code, exc.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", detail=str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(422, "validation_error", "Request validation failed.", detail=str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Route handlers may raise HTTPException with a structured dict as detail."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all. The exception goes to the log only, never into the response."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit and no auth -- load balancers must always reach it.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"], response_model=HealthResponse)
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and database reachability."""
    try:
        database = "ok" if request.app.state.store.ping() else "error"
    except SQLAlchemyError:
        logger.warning("Health check could not reach the database", exc_info=True)
        database = "error"
    status = "healthy" if database == "ok" else "degraded"
    return HealthResponse(status=status, version=__version__, components={"app": "ok", "database": database})
