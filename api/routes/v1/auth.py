"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/register       -- create a local account; 201
  POST /api/v1/auth/login          -- password login; token pair in body + cookies
  POST /api/v1/auth/refresh-token  -- rotate the refresh token; new pair
  POST /api/v1/auth/logout         -- revoke refresh session, clear cookies (requires auth)
  GET  /api/v1/auth/me             -- current user info (requires auth)
  GET  /api/v1/auth/providers      -- list enabled OAuth providers (public)

Security:
  [C1] IdentityResolver.login() provides timing equalization and one generic
       error for every bad-credential case -- never inline the lookup.
  [M5] Cache-Control: no-store on every response that carries tokens.
  The refresh cookie is path-scoped to /api/v1/auth/refresh-token, so the
  browser only ever sends it here.

Handlers are plain `def`: FastAPI runs them in its worker threadpool, so
bcrypt and database calls never block the event loop.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import (
    LoginRequest,
    MessageResponse,
    OAuthProviderInfo,
    RefreshRequest,
    RegisterRequest,
    TokenPairResponse,
    UserResponse,
)
from auth.errors import Unauthorized
from auth.guard import AuthGuard, get_current_user
from auth.identity import IdentityResolver
from auth.models import User
from auth.oauth import get_enabled_providers
from auth.sessions import SessionManager
from auth.tokens import TokenService

# Auth policy:
# - POST /api/v1/auth/register:       public
# - POST /api/v1/auth/login:          public
# - POST /api/v1/auth/refresh-token:  public -- the refresh token is the credential
# - POST /api/v1/auth/logout:         requires auth (get_current_user)
# - GET  /api/v1/auth/me:             requires auth (get_current_user)
# - GET  /api/v1/auth/providers:      public -- login page renders buttons from it
router = APIRouter()


def _token_response(request: Request, user: User, pair, status_code: int = 200) -> JSONResponse:
    tokens: TokenService = request.app.state.tokens
    resp = JSONResponse(
        status_code=status_code,
        content=TokenPairResponse.from_pair(pair, user).model_dump(),
    )
    tokens.set_token_cookies(resp, pair)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create a local account. No tokens are issued; the client logs in next.

    400 on a malformed email or weak password, 409 if the email is taken.
    """
    resolver: IdentityResolver = request.app.state.resolver
    user = resolver.signup(body.email, body.password, body.username)
    return UserResponse.from_user(user)


@router.post("/auth/login", response_model=TokenPairResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; issue a token pair.

    Any previously active refresh token for the account stops working.
    """
    resolver: IdentityResolver = request.app.state.resolver
    sessions: SessionManager = request.app.state.sessions
    guard: AuthGuard = request.app.state.guard

    user = resolver.login(body.email, body.password)
    pair = sessions.issue_session(user)
    guard.remember(request, user)
    return _token_response(request, user, pair)


@router.post("/auth/refresh-token", response_model=TokenPairResponse)
def refresh_token(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Exchange the current refresh token for a new pair.

    The token is read from the path-scoped refresh cookie, or from the JSON
    body for clients without a cookie jar. On any failure both cookies are
    cleared and the response is a generic 401.
    """
    settings = request.app.state.settings
    sessions: SessionManager = request.app.state.sessions
    tokens: TokenService = request.app.state.tokens

    presented = request.cookies.get(settings.refresh_cookie_name)
    if not presented and body is not None:
        presented = body.refresh_token

    try:
        user, pair = sessions.refresh(presented)
    except Unauthorized:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "unauthorized", "message": "Invalid refresh token.", "detail": None}},
        )
        tokens.clear_token_cookies(resp)
        return resp

    return _token_response(request, user, pair)


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty if none are set up."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(request.app.state.settings)]


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Revoke the refresh session and clear both cookies."""
    sessions: SessionManager = request.app.state.sessions
    tokens: TokenService = request.app.state.tokens
    guard: AuthGuard = request.app.state.guard

    sessions.logout(current_user)
    guard.forget(request)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    tokens.clear_token_cookies(resp)
    return resp


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return identity information for the currently authenticated user."""
    return UserResponse.from_user(current_user)
