"""
web/routes.py -- Browser-facing login flows for Gatehouse.

These routes drive the same auth core as the JSON API but answer with
redirects and Jinja2 pages instead of JSON.

Route registration order matters. FastAPI resolves same-level paths in order:
  - GET /auth/login and GET /auth/register must be registered before
    GET /auth/{provider} or FastAPI captures "login"/"register" as a provider.

Routes:
  GET  /auth/login                -- login page (form + provider links)
  POST /auth/login                -- handle password login, set cookies, redirect
  GET  /auth/register             -- registration page
  POST /auth/register             -- handle registration, redirect to login
  POST /auth/logout               -- revoke session, clear cookies, redirect to login
  GET  /auth/{provider}           -- OAuth redirect to provider
  GET  /auth/{provider}/redirect  -- OAuth callback handler
  GET  /profile                   -- signed-in landing page (auth required)
"""

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from starlette.concurrency import run_in_threadpool

from auth.errors import AuthError, ConflictError, OAuthExchangeError, ValidationError
from auth.guard import AuthGuard, get_current_user, safe_next, try_get_current_user
from auth.identity import IdentityResolver
from auth.models import User
from auth.oauth import exchange_code, get_enabled_providers
from auth.passwords import MIN_PASSWORD_LENGTH
from auth.sessions import SessionManager
from auth.tokens import TokenService

logger = logging.getLogger("gatehouse.web")

router = APIRouter()

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

# Whitelist mapping for ?error= query params on the entry pages [M3].
# The raw query param is NEVER passed to templates -- only the message from
# this dict is.
_ERROR_MESSAGES: dict[str, str] = {
    "bad_credentials": "Invalid email or password.",
    "oauth_failed": "OAuth authentication failed. Please try again.",
    "email_in_use": "That email is already registered with a different sign-in method.",
    "session_expired": "Your session has expired. Please log in again.",
    "invalid_registration": "Please provide a valid email and a stronger password.",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _redirect_with_error(path: str, code: str) -> RedirectResponse:
    return RedirectResponse(f"{path}?{urlencode({'error': code})}", status_code=302)


def _error_message(request: Request) -> Optional[str]:
    return _ERROR_MESSAGES.get(request.query_params.get("error", ""))


def _start_session(request: Request, user: User, next_url: Optional[str]) -> RedirectResponse:
    """Issue a token pair for user, set the cookies, and redirect onward."""
    sessions: SessionManager = request.app.state.sessions
    tokens: TokenService = request.app.state.tokens
    guard: AuthGuard = request.app.state.guard

    pair = sessions.issue_session(user)
    guard.remember(request, user)
    resp = RedirectResponse(next_url or request.app.state.settings.post_login_path, status_code=302)
    tokens.set_token_cookies(resp, pair)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _enabled_provider_names(request: Request) -> set[str]:
    return {p["name"] for p in get_enabled_providers(request.app.state.settings)}


# ---------------------------------------------------------------------------
# Local credentials
# ---------------------------------------------------------------------------


@router.get("/auth/login", response_class=HTMLResponse)
def login_form(request: Request):
    """Render the login page with the password form and provider links."""
    if try_get_current_user(request) is not None:
        return RedirectResponse(request.app.state.settings.post_login_path, status_code=302)

    next_url = safe_next(request.query_params.get("next"))
    return templates.TemplateResponse(
        request,
        "login.html",
        {
            "error_message": _error_message(request),
            "form_action": "/auth/login" + (f"?{urlencode({'next': next_url})}" if next_url else ""),
            "providers": get_enabled_providers(request.app.state.settings),
        },
    )


@router.post("/auth/login")
def login_post(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
) -> RedirectResponse:
    """Handle the password login form."""
    resolver: IdentityResolver = request.app.state.resolver
    try:
        user = resolver.login(email, password)
    except (AuthError, ValidationError):
        return _redirect_with_error(request.app.state.settings.login_path, "bad_credentials")
    return _start_session(request, user, safe_next(request.query_params.get("next")))


@router.get("/auth/register", response_class=HTMLResponse)
def register_form(request: Request) -> HTMLResponse:
    """Render the registration page."""
    return templates.TemplateResponse(
        request,
        "register.html",
        {
            "error_message": _error_message(request),
            "min_password_length": MIN_PASSWORD_LENGTH,
        },
    )


@router.post("/auth/register")
def register_post(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    username: Optional[str] = Form(None),
) -> RedirectResponse:
    """Handle the registration form. Success lands on the login page."""
    resolver: IdentityResolver = request.app.state.resolver
    try:
        resolver.signup(email, password, username)
    except ConflictError:
        return _redirect_with_error("/auth/register", "email_in_use")
    except ValidationError:
        return _redirect_with_error("/auth/register", "invalid_registration")
    return RedirectResponse(request.app.state.settings.login_path, status_code=303)


@router.post("/auth/logout")
def logout(request: Request) -> RedirectResponse:
    """Revoke the refresh session (if the request is authenticated) and clear cookies.

    Always clears the cookies, so a browser holding an expired access token
    can still sign out cleanly.
    """
    sessions: SessionManager = request.app.state.sessions
    tokens: TokenService = request.app.state.tokens
    guard: AuthGuard = request.app.state.guard

    user = try_get_current_user(request)
    if user is not None:
        sessions.logout(user)
    guard.forget(request)
    resp = RedirectResponse(request.app.state.settings.login_path, status_code=302)
    tokens.clear_token_cookies(resp)
    return resp


# ---------------------------------------------------------------------------
# Federated identity
# ---------------------------------------------------------------------------


@router.get("/auth/{provider}")
async def oauth_redirect(request: Request, provider: str) -> RedirectResponse:
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the enabled list first, so a
    crafted path segment can never reach the registry.
    """
    if provider not in _enabled_provider_names(request):
        return _redirect_with_error(request.app.state.settings.login_path, "oauth_failed")

    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/{provider}/redirect", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Handle the provider callback and start a token session.

    Flow:
      1. Exchange the authorization code for a normalized profile.
      2. Find the account by (provider, provider id) or create it.
      3. Issue a token pair, set cookies, redirect to the landing page.
    """
    login_path = request.app.state.settings.login_path
    if provider not in _enabled_provider_names(request):
        return _redirect_with_error(login_path, "oauth_failed")

    client = request.app.state.oauth.create_client(provider)
    try:
        profile = await exchange_code(client, provider, request)
    except OAuthExchangeError:
        return _redirect_with_error(login_path, "oauth_failed")

    resolver: IdentityResolver = request.app.state.resolver
    try:
        user = await run_in_threadpool(resolver.resolve_federated, provider, profile.provider_user_id, profile)
    except ConflictError:
        logger.info("%s login refused: email belongs to another account", provider)
        return _redirect_with_error(login_path, "email_in_use")
    except ValidationError:
        logger.warning("%s login refused: profile has no verified email", provider)
        return _redirect_with_error(login_path, "oauth_failed")

    return await run_in_threadpool(_start_session, request, user, None)


# ---------------------------------------------------------------------------
# Signed-in pages
# ---------------------------------------------------------------------------


@router.get("/profile", response_class=HTMLResponse)
def profile_page(request: Request, current_user: User = Depends(get_current_user)) -> HTMLResponse:
    """Signed-in landing page. Unauthenticated browsers are redirected to login."""
    return templates.TemplateResponse(
        request,
        "profile.html",
        {"user": current_user, "error_message": None},
    )
