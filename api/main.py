"""
api/main.py -- FastAPI application entry point for SessionKeep.

Exposes the session lifecycle (register, login, external login, refresh,
logout, password reset, email verification) over HTTP for browser and
service clients.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the account store, identity resolver, notifier and gateway
on startup, seeds the first admin when ADMIN_EMAIL/ADMIN_PASSWORD are set,
and closes the store on shutdown.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError
from auth.external import build_resolver
from auth.gateway import AuthGateway
from auth.notifier import EmailNotifier
from auth.store import AccountStore
from core.config import get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sessionkeep.api")

settings = get_settings()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build application-level collaborators and tear them down on shutdown.

    Startup order:
      1. Account store -- everything else reads or writes through it.
      2. Resolver and notifier -- no dependencies, no network calls at startup.
      3. Gateway -- composes the three above.
      4. Admin seeding -- needs the gateway; skipped when an admin exists.
    """
    logger.info("SessionKeep API starting up")
    store = AccountStore(settings.database_url) if settings.database_url else AccountStore()
    resolver = build_resolver(settings)
    notifier = EmailNotifier.from_settings(settings)
    if not notifier.is_configured:
        logger.warning("SMTP_HOST not set -- verification and reset links will be logged, not mailed")

    app.state.account_store = store
    app.state.resolver = resolver
    app.state.notifier = notifier
    app.state.gateway = AuthGateway(store, resolver, notifier, settings)
    logger.info("Auth initialized (external providers: %s)", ", ".join(resolver.providers) or "none")

    if settings.admin_email and settings.admin_password:
        app.state.gateway.bootstrap_admin(settings.admin_email, settings.admin_password)

    yield

    store.close()
    logger.info("SessionKeep API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SessionKeep API",
    description="Account sessions: password and external sign-in, refresh rotation, password reset.",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
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
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _envelope(status_code: int, detail: ErrorDetail) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=detail).model_dump(by_alias=True),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render a domain failure with its own status and stable code.

    Auth failures never carry a token, but they answer token-bearing
    endpoints, so they are marked no-store like the successes [M5].
    """
    response = _envelope(exc.status_code, ErrorDetail(code=exc.code, message=exc.message))
    response.headers["Cache-Control"] = "no-store"
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


# Sync on purpose: SlowAPIMiddleware calls this handler without awaiting it.
@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _envelope(
        429,
        ErrorDetail(code="rate_limited", message="Too many requests.", detail=str(exc.detail)),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    Only field locations and messages are echoed; the rejected input values
    (which may be passwords) are not.
    """
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', 'invalid')}" for err in exc.errors()
    )
    return _envelope(
        422,
        ErrorDetail(code="validation_error", message="Request validation failed.", detail=problems),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Dependencies raise HTTPException with a dict detail; that dict is used
    directly as the error field. Headers such as WWW-Authenticate are kept.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    response = _envelope(exc.status_code, ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail)))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback is logged under a fresh trace id; the client receives only
    that id, so a support request can be matched to the log line.
    """
    trace_id = uuid.uuid4().hex
    logger.exception("Unhandled exception on %s %s (trace %s)", request.method, request.url.path, trace_id)
    return _envelope(
        500,
        ErrorDetail(code="internal_error", message="An unexpected error occurred.", trace_id=trace_id),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit: health checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=API_VERSION)
