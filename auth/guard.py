"""
auth/guard.py -- Auth Guard: the per-request authentication decision.

Session providers are checked in priority order:
  1. TokenSessionProvider  -- access token from the "access_token" cookie
                              (browser) or an Authorization: Bearer header
                              (API clients).
  2. ServerSessionProvider -- user id in the signed Starlette session. Only
                              installed when SESSION_STRATEGY=hybrid.

The first provider whose credential material is structurally present makes
the decision. If that verification fails the request is rejected -- the guard
never falls back to a lower-priority provider, so an expired or forged token
cannot be papered over by a stale server session.

On success the user is attached to request.state.user. On failure the guard
raises Unauthorized (or the specific TokenError); unauthorized_response()
turns that into 401 JSON for API consumers or a 302 to the login page for
browser navigations. api/main.py registers it as the exception handler.

get_current_user() is the FastAPI dependency; try_get_current_user() is the
soft variant (None instead of raising).

Layer rule: no imports from web/ or api/. fastapi/starlette imports are
allowed because this module is part of the dependency injection system.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse

from auth.errors import ExpiredToken, GatehouseError, Unauthorized
from auth.models import User
from auth.store import UserStore
from auth.tokens import ACCESS, TokenService
from core.config import Settings

logger = logging.getLogger("gatehouse.auth.guard")

_SESSION_KEY = "user_id"


# ---------------------------------------------------------------------------
# Session providers
# ---------------------------------------------------------------------------


class SessionProvider:
    """One way of carrying an authenticated identity across requests."""

    name = "base"

    def credential_present(self, request: Request) -> bool:
        raise NotImplementedError

    def authenticate(self, request: Request) -> User:
        """Resolve the user. Called only when credential_present() is True."""
        raise NotImplementedError

    def remember(self, request: Request, user: User) -> None:
        """Record a fresh login. Stateless providers do nothing."""

    def forget(self, request: Request) -> None:
        """Drop any server-side login state. Stateless providers do nothing."""


class TokenSessionProvider(SessionProvider):
    """Stateless access tokens from a cookie or an Authorization header."""

    name = "token"

    def __init__(self, tokens: TokenService, store: UserStore, settings: Settings) -> None:
        self._tokens = tokens
        self._store = store
        self._cookie_name = settings.access_cookie_name

    def extract(self, request: Request) -> str | None:
        # 1. Cookie (browser)
        token = request.cookies.get(self._cookie_name)
        if token:
            return token
        # 2. Authorization: Bearer header (API clients)
        auth_header = request.headers.get("Authorization", "")
        if auth_header[:7].lower() == "bearer ":
            return auth_header[7:].strip() or None
        return None

    def credential_present(self, request: Request) -> bool:
        return self.extract(request) is not None

    def authenticate(self, request: Request) -> User:
        claims = self._tokens.verify(self.extract(request) or "", ACCESS)
        user = self._store.find_by_id(claims.subject_id)
        if user is None:
            raise Unauthorized("token subject no longer exists")
        return user


class ServerSessionProvider(SessionProvider):
    """Legacy server-side session: the user id in the signed session cookie."""

    name = "session"

    def __init__(self, store: UserStore) -> None:
        self._store = store

    def credential_present(self, request: Request) -> bool:
        return bool(request.session.get(_SESSION_KEY))

    def authenticate(self, request: Request) -> User:
        user = self._store.find_by_id(request.session[_SESSION_KEY])
        if user is None:
            request.session.pop(_SESSION_KEY, None)
            raise Unauthorized("session subject no longer exists")
        return user

    def remember(self, request: Request, user: User) -> None:
        request.session[_SESSION_KEY] = user.id

    def forget(self, request: Request) -> None:
        request.session.pop(_SESSION_KEY, None)


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


class AuthGuard:
    """Runs the session providers in priority order for each request."""

    def __init__(self, providers: list[SessionProvider], settings: Settings) -> None:
        self.providers = providers
        self._settings = settings

    @classmethod
    def from_settings(cls, settings: Settings, tokens: TokenService, store: UserStore) -> "AuthGuard":
        providers: list[SessionProvider] = [TokenSessionProvider(tokens, store, settings)]
        if settings.session_strategy == "hybrid":
            providers.append(ServerSessionProvider(store))
        return cls(providers, settings)

    def authenticate(self, request: Request) -> User:
        """Return the request's user or raise Unauthorized / a TokenError."""
        for provider in self.providers:
            if not provider.credential_present(request):
                continue
            try:
                user = provider.authenticate(request)
            except Unauthorized as exc:
                logger.info("%s credential rejected: %s", provider.name, type(exc).__name__)
                raise
            request.state.user = user
            return user
        raise Unauthorized("authentication required")

    def remember(self, request: Request, user: User) -> None:
        for provider in self.providers:
            provider.remember(request, user)

    def forget(self, request: Request) -> None:
        for provider in self.providers:
            provider.forget(request)


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def get_current_user(request: Request) -> User:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    guard: AuthGuard = request.app.state.guard
    return guard.authenticate(request)


def try_get_current_user(request: Request) -> User | None:
    """Return the authenticated user, or None on any authentication failure."""
    guard: AuthGuard = request.app.state.guard
    try:
        return guard.authenticate(request)
    except Unauthorized:
        return None


# ---------------------------------------------------------------------------
# Boundary translation
# ---------------------------------------------------------------------------


def wants_redirect(request: Request) -> bool:
    """True for browser navigations, False for API consumers."""
    if request.url.path.startswith("/api/"):
        return False
    return "text/html" in request.headers.get("accept", "")


def safe_next(next_url: str | None) -> str | None:
    """Return next_url only if it is a server-local relative path. [C2]

    Rejects absolute URLs and protocol-relative URLs ("//host") so a crafted
    ?next= cannot send the browser off-site after login.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//") and "\\" not in next_url:
        return next_url
    return None


def unauthorized_response(request: Request, exc: GatehouseError):
    """Translate an authentication failure into a transport-level response.

    Every token failure is collapsed to the same generic "unauthorized" body;
    the specific cause has already been logged.
    """
    settings: Settings = request.app.state.settings
    if wants_redirect(request):
        params = {"next": request.url.path}
        if isinstance(exc, ExpiredToken):
            params["error"] = "session_expired"
        resp = RedirectResponse(f"{settings.login_path}?{urlencode(params)}", status_code=302)
        if request.cookies.get(settings.access_cookie_name):
            request.app.state.tokens.clear_access_cookie(resp)
        return resp

    resp = JSONResponse(
        status_code=401,
        content={"error": {"code": "unauthorized", "message": "Authentication required.", "detail": None}},
    )
    resp.headers["WWW-Authenticate"] = "Bearer"
    return resp
