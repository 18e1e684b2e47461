"""
api/main.py -- FastAPI application entry point for Gatehouse.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- credentialed CORS for allowed browser origins
  3. SessionMiddleware     -- signed session cookie: OAuth state, and the
                              user id when SESSION_STRATEGY=hybrid

Dependency wiring:
  wire_services() constructs every collaborator exactly once and stores it on
  app.state: store -> resolver / tokens -> sessions -> guard, plus the OAuth
  registry. Route handlers read them from request.app.state; nothing is
  registered in ambient global state. Lifespan calls it on startup; tests call
  it with their own in-memory store.

Error translation happens here (exception handlers) and in auth/guard.py --
nowhere else.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.profile import router as profile_router
from api.routes.v1.auth import router as auth_router
from auth.errors import CorruptDigest, GatehouseError, Unauthorized
from auth.guard import AuthGuard, get_current_user, unauthorized_response
from auth.identity import IdentityResolver
from auth.models import User
from auth.oauth import build_oauth, get_enabled_providers
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import TokenService
from core.config import Settings, get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gatehouse.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(app: FastAPI, settings: Settings, store: UserStore, oauth=None) -> None:
    """Construct the auth core once and attach it to app.state."""
    tokens = TokenService(settings)
    app.state.settings = settings
    app.state.user_store = store
    app.state.tokens = tokens
    app.state.resolver = IdentityResolver(store, settings)
    app.state.sessions = SessionManager(store, tokens, settings)
    app.state.guard = AuthGuard.from_settings(settings, tokens, store)
    app.state.oauth = oauth if oauth is not None else build_oauth(settings)


# ---------------------------------------------------------------------------
# Lifespan -- startup / shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the user store and wire the auth core; close the store on shutdown."""
    logger.info("Gatehouse API starting up")
    store = UserStore(_settings.database_url)
    wire_services(app, _settings, store)
    logger.info(
        "Auth initialized (session_strategy=%s, providers=%s)",
        _settings.session_strategy,
        [p["name"] for p in get_enabled_providers(_settings)],
    )

    yield

    store.close()
    logger.info("Gatehouse API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Gatehouse API",
    description="Local and federated login with rotating access/refresh token sessions.",
    version=VERSION,
    lifespan=lifespan,
    # Auth-protected equivalents are registered below.
    docs_url=None,
    redoc_url=None,
)
app.state.settings = _settings

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> Session.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,  # token cookies
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

# authlib keeps the OAuth state value here between the authorization redirect
# and the callback. In hybrid mode the guard also keeps the user id here.
app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.secret_key,
    session_cookie="gatehouse_session",
    same_site="lax",
    https_only=_settings.cookies_secure,
)


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log method, path, status and latency. Query strings may carry OAuth codes and are not logged."""
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info("%s %s -> %d (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(profile_router, tags=["Profile"])
# Browser router is mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Gatehouse API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="Gatehouse API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error body is the ErrorResponse envelope {"error": {code, message,
# detail}}. Authentication failures may redirect browsers instead.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail=None) -> JSONResponse:
    envelope = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


@app.exception_handler(GatehouseError)
async def gatehouse_error_handler(request: Request, exc: GatehouseError):
    """Map typed core errors to status codes.

    Unauthorized and every token error share one generic response (or login
    redirect). CorruptDigest is an internal fault: logged with traceback,
    reported as a plain 500.
    """
    if isinstance(exc, Unauthorized):
        return unauthorized_response(request, exc)
    if isinstance(exc, CorruptDigest):
        logger.error("Corrupt digest on %s %s", request.method, request.url.path, exc_info=exc)
    return _error_response(exc.status_code, exc.error_code, exc.client_message, exc.detail or None)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 for request bodies or query params that fail schema validation."""
    return _error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Wrap framework HTTP errors (404, 405, ...) in the envelope."""
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unexpected server errors. The exception text goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    store: UserStore = request.app.state.user_store
    database = "ok" if store.ping() else "error"
    return HealthResponse(version=VERSION, components={"app": "ok", "database": database})
