"""
api/main.py -- FastAPI application entry point for authgate.

Run with:  uvicorn api.main:app --reload
           python main.py serve

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- credentials allowed for trusted_origins only
  3. log_requests          -- method, path, status, latency, client
  4. security_headers      -- nosniff, frame denial, CSP, HSTS (secure mode)

Rate limits are slowapi decorators on the routes themselves (api/limiter.py);
/health carries none.

Lifespan handles startup (database, components, sweep task) and shutdown
(cancel sweep task, drain mail queue, dispose engine) symmetrically.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from slowapi.errors import RateLimitExceeded
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import configure as configure_limiter
from api.limiter import limiter, rate_limited
from api.models import ErrorResponse, HealthResponse
from api.routes.auth import router as auth_router
from auth.errors import AuthError
from auth.notify import Mailer, NotificationDispatcher, Notifier
from auth.passwords import BcryptHasher
from auth.service import AuthService
from auth.sessions import SessionManager
from auth.store import IdentityStore, ProfileStore
from auth.tokens import TokenIssuer
from core.config import Settings, get_settings
from core.database import Database, to_iso, utc_now

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authgate.api")

# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def build_components(
    app: FastAPI,
    settings: Settings,
    db: Database,
    notifier: Notifier | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> None:
    """Construct every component on top of one Database and attach them to app.state.

    Pass notifier (and clock) to replace the SMTP path and wall clock in tests.
    """
    app.state.settings = settings
    app.state.db = db
    app.state.dispatcher = None
    if notifier is None:
        dispatcher = NotificationDispatcher(Mailer.from_settings(settings), settings.notification_workers)
        app.state.dispatcher = dispatcher
        notifier = Notifier.from_settings(dispatcher, settings)

    sessions = SessionManager(
        db,
        settings.secret_key,
        ttl=timedelta(seconds=settings.session_expire_seconds),
        update_age=timedelta(seconds=settings.session_update_age_seconds),
        clock=clock,
    )
    app.state.auth_service = AuthService(
        identities=IdentityStore(db, clock),
        profiles=ProfileStore(db, clock),
        issuer=TokenIssuer(db, settings.secret_key, clock),
        sessions=sessions,
        hasher=BcryptHasher(rounds=settings.bcrypt_rounds),
        notifier=notifier,
        settings=settings,
        clock=clock,
    )
    configure_limiter(settings)


# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


def sweep_expired(app: FastAPI) -> dict[str, int]:
    """Delete expired sessions and purpose tokens once."""
    service: AuthService = app.state.auth_service
    removed = {
        "sessions": service.sessions.purge_expired(),
        "tokens": service.issuer.purge_expired(),
    }
    logger.info("Sweep removed %d session(s), %d token(s)", removed["sessions"], removed["tokens"])
    return removed


async def _sweep_loop(app: FastAPI) -> None:
    """Run sweep_expired() every sweep_interval_seconds.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly. A failed sweep is logged
    and retried on the next tick.
    """
    while True:
        await asyncio.sleep(app.state.settings.sweep_interval_seconds)
        try:
            await run_in_threadpool(sweep_expired, app)
        except SQLAlchemyError:
            logger.exception("Sweep failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Own the process-wide resources: connect before serving, release after.

    Startup order matters:
      1. Database first -- every component creates its tables on construction.
      2. Components second -- routes read them from app.state.
      3. Sweep task last -- references the components.
    """
    settings = get_settings()
    logger.info("authgate %s starting up", VERSION)
    db = Database(settings.database_url)
    db.connect()
    build_components(app, settings, db)
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app))

    yield

    app.state.sweep_task.cancel()
    if app.state.dispatcher is not None:
        app.state.dispatcher.shutdown(wait=True)
    db.close()
    logger.info("authgate shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="authgate",
    description="Credential and session management: signup, login, sessions, password reset, email verification.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if _settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


def error_response(status_code: int, message: str, headers: dict | None = None) -> JSONResponse:
    """Return {success: false, status, message}. status is "fail" for 4xx, "error" otherwise."""
    status = "fail" if 400 <= status_code < 500 else "error"
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(status=status, message=message).model_dump(),
        headers=headers,
    )


# ---------------------------------------------------------------------------
# HTTP middleware
#
# @app.middleware("http") registrations wrap everything registered before
# them, so the last one defined is the outermost of the two.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Cross-Origin-Opener-Policy", "same-origin")
    response.headers.setdefault("Content-Security-Policy", "default-src 'self'; frame-ancestors 'none'")
    if request.app.state.settings.secure_cookies:
        response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response


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


app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.trusted_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# slowapi looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router)

# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Typed use-case failures carry their own status code and client-safe message."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s", type(exc).__name__, request.method, request.url.path)
    return error_response(exc.status_code, exc.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 envelope carrying the endpoint class message and slowapi's
    X-RateLimit-* and Retry-After headers.
    """
    response = error_response(429, str(exc.detail))
    request.app.state.limiter._inject_headers(response, request.state.view_rate_limit)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with the first validation problem as the message."""
    errors = exc.errors()
    if not errors:
        return error_response(400, "Invalid input")
    first = errors[0]
    field = next((str(part) for part in reversed(first.get("loc", ())) if isinstance(part, str)), "")
    if first.get("type") == "missing":
        message = f"{field} is required" if field and field != "body" else "Request body is required"
    elif first.get("type") in ("json_invalid", "model_attributes_type", "dict_type"):
        message = "Request body must be a JSON object"
    else:
        detail = str(first.get("msg", "Invalid input")).removeprefix("Value error, ")
        message = f"{field}: {detail}" if field and field != "body" else detail
    return error_response(400, message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Routing errors (404, 405) and any HTTPException raised by a dependency."""
    if exc.status_code == 404:
        message = f"Route {request.url.path} not found"
    else:
        message = str(exc.detail)
    return error_response(exc.status_code, message, headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the server log only, never to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_response(500, "Internal server error")


# ---------------------------------------------------------------------------
# Health and root
#
# Defined directly in main.py (not in a router) so they are always reachable
# regardless of router registration state.
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Liveness plus a database round trip. 503 when the database is unreachable."""
    db_ok = request.app.state.db.ping()
    body = HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=VERSION,
        timestamp=to_iso(utc_now()),
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
    return JSONResponse(status_code=200 if db_ok else 503, content=body.model_dump())


@app.get("/", tags=["Health"])
@rate_limited()
def root(request: Request, response: Response) -> dict:
    return {
        "success": True,
        "message": "authgate API",
        "version": VERSION,
        "endpoints": {"health": "/health", "auth": "/auth/*"},
    }
