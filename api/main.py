"""
api/main.py -- FastAPI application entry point for Scriptoria.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan opens the database, creates the schema, wires every service onto
app.state (wire_services), seeds the bootstrap admin when configured, and
closes the engine on shutdown. Tests replace the lifespan but reuse
wire_services() so routes see exactly the production object graph.
"""

from __future__ import annotations

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

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.documents import router as documents_router
from api.routes.v1.stories import router as stories_router
from audit.store import AuditSink
from auth.guard import LoginGuard
from auth.store import AccountStore
from auth.tokens import TokenLedger
from catalog.store import StoryStore
from core.config import Settings, get_settings
from core.database import Database
from core.errors import ErrorKind, ServiceError
from core.timeutil import Clock, utcnow
from documents.engine import DocumentEngine
from documents.models import RiskPolicy

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("scriptoria.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(app: FastAPI, db: Database, settings: Settings, clock: Clock = utcnow) -> None:
    """Build every store and service around one Database and hang them on app.state.

    Pattern: explicit constructor injection. No component looks up a global
    engine; the Database handle is passed down from here.
    """
    audit = AuditSink(db, clock=clock)
    accounts = AccountStore(db, clock=clock)
    ledger = TokenLedger(
        db,
        settings.secret_key,
        access_ttl_seconds=settings.access_token_ttl_seconds,
        refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
        clock=clock,
    )
    stories = StoryStore(db, clock=clock)
    policy = RiskPolicy(
        min_existing_words=settings.risk_min_existing_words,
        chapter_drop=settings.risk_chapter_drop,
        loss_ratio=settings.risk_loss_ratio,
        loss_floor_words=settings.risk_loss_floor_words,
        placeholder_title=settings.risk_placeholder_title,
    )

    app.state.settings = settings
    app.state.db = db
    app.state.audit = audit
    app.state.accounts = accounts
    app.state.ledger = ledger
    app.state.guard = LoginGuard(
        db,
        accounts,
        ledger,
        audit,
        max_attempts=settings.login_max_attempts,
        lock_minutes=settings.login_lock_minutes,
        clock=clock,
    )
    app.state.stories = stories
    app.state.documents = DocumentEngine(
        db, stories, audit, policy=policy, max_bytes=settings.document_max_bytes, clock=clock
    )


def seed_admin(app: FastAPI, settings: Settings) -> None:
    """Create the bootstrap admin if ADMIN_PASSWORD is set and the handle is free."""
    if not settings.admin_password:
        return
    accounts: AccountStore = app.state.accounts
    if accounts.get_by_username(settings.admin_username) is not None:
        return
    guard: LoginGuard = app.state.guard
    try:
        guard.provision(settings.admin_username, settings.admin_password, role="admin")
    except ServiceError as exc:
        # Raced with another worker, or the configured credentials are invalid.
        logger.warning("Admin seed skipped: %s", exc.message)
        return
    logger.info("Seeded admin account %r", settings.admin_username)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the database, wire services, seed the admin; close on shutdown."""
    logger.info("Scriptoria API starting up")
    db = Database(_settings.database_url)
    db.create_schema()
    wire_services(app, db, _settings)
    seed_admin(app, _settings)
    logger.info("Database ready (%s)", db.engine.url.render_as_string(hide_password=True))

    yield

    db.close()
    logger.info("Scriptoria API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Scriptoria API",
    description="Accounts, sessions and safe document editing for the Scriptoria story workspace.",
    version=VERSION,
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
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Never logs headers or bodies: both can carry bearer tokens and passwords.
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
app.include_router(stories_router, prefix="/api/v1", tags=["Stories"])
app.include_router(documents_router, prefix="/api/v1", tags=["Documents"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Render a typed domain failure. Locked failures also set Retry-After."""
    response = JSONResponse(status_code=exc.status_code, content={"error": exc.to_payload()})
    if exc.retry_after is not None:
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
                retry_after=retry_after,
            )
        ).model_dump(exclude_none=True),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    Input values are left out of the detail: a rejected login body would
    otherwise echo the submitted password.
    """
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code=ErrorKind.INVALID_INPUT.value,
                message="Request validation failed.",
                detail=str(errors),
            )
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a dict detail. When detail is
    already a structured dict, use it directly as the error field rather than
    stringifying it -- str(dict) produces a Python repr, not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(exclude_none=True),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    Any open transaction has already been rolled back by Database.transaction().
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code=ErrorKind.INTERNAL.value,
                message="An unexpected error occurred.",
            )
        ).model_dump(exclude_none=True),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    db: Database = request.app.state.db
    database = "ok" if db.ping() else "unavailable"
    status = "ok" if database == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, components={"database": database})
