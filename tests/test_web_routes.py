"""
tests/test_web_routes.py -- Integration tests for the browser login flows.

These tests run through the real ASGI stack with follow_redirects=False and
assert on Location headers directly -- following the redirect would hide them.

Coverage:
  - Unauthenticated navigation -> 302 /auth/login?next={path}
  - Expired access cookie -> 302 with error=session_expired, stale cookie deleted
  - Form login / registration / logout redirects
  - next= is only honoured for local paths (open-redirect prevention)
  - ?error= codes are whitelisted, never echoed
  - OAuth redirect and callback with the provider exchange stubbed out
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.responses import RedirectResponse
from fastapi.testclient import TestClient

import web.routes
from auth.errors import OAuthExchangeError
from auth.models import FederatedProfile
from auth.oauth import exchange_code
from auth.tokens import TokenService

EMAIL = "alice@example.com"
PASSWORD = "Str0ng!Pass"
HTML = {"Accept": "text/html,application/xhtml+xml"}


def _query(location: str) -> dict[str, list[str]]:
    return parse_qs(urlparse(location).query)


def _form_login(client: TestClient, email: str = EMAIL, password: str = PASSWORD, next_url: str | None = None):
    url = "/auth/login" + (f"?next={next_url}" if next_url else "")
    return client.post(url, data={"email": email, "password": password})


@pytest.fixture
def registered(client):
    c, store, settings = client
    c.post("/api/v1/auth/register", json={"email": EMAIL, "password": PASSWORD})
    return c, store, settings


class TestAuthRedirectChain:
    def test_unauthenticated_redirects_to_login(self, client) -> None:
        c, _, _ = client
        resp = c.get("/profile", headers=HTML)
        assert resp.status_code == 302
        location = resp.headers["location"]
        assert urlparse(location).path == "/auth/login"
        assert _query(location)["next"] == ["/profile"]
        assert "error" not in _query(location)

    def test_unauthenticated_api_client_gets_401(self, client) -> None:
        c, _, _ = client
        resp = c.get("/profile")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_expired_cookie_redirects_with_session_expired(self, registered) -> None:
        c, store, settings = registered
        user = store.find_by_email(EMAIL)
        old = TokenService(settings, clock=lambda: datetime.now(timezone.utc) - timedelta(hours=1))
        c.cookies.set("access_token", old.issue_access_token(user), domain="testserver.local")

        resp = c.get("/profile", headers=HTML)
        assert resp.status_code == 302
        assert _query(resp.headers["location"])["error"] == ["session_expired"]
        stale = [h.lower() for h in resp.headers.get_list("set-cookie") if h.startswith("access_token=")]
        assert stale and "max-age=0" in stale[0]
        assert "httponly" in stale[0]
        assert "samesite=lax" in stale[0]

    def test_forged_cookie_redirects_without_expired_flag(self, client) -> None:
        c, _, _ = client
        c.cookies.set("access_token", "forged.token.value", domain="testserver.local")
        resp = c.get("/profile", headers=HTML)
        assert resp.status_code == 302
        assert "error" not in _query(resp.headers["location"])

    def test_authenticated_request_passes_through(self, registered) -> None:
        c, _, _ = registered
        _form_login(c)
        resp = c.get("/profile", headers=HTML)
        assert resp.status_code == 200
        assert "alice" in resp.text


class TestFormLogin:
    def test_success_sets_cookies_and_redirects_to_landing(self, registered) -> None:
        c, _, _ = registered
        resp = _form_login(c)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/profile"
        assert resp.headers["cache-control"] == "no-store"
        names = {h.split("=", 1)[0] for h in resp.headers.get_list("set-cookie")}
        assert {"access_token", "refresh_token"} <= names

    def test_failure_redirects_with_generic_error(self, registered) -> None:
        c, _, _ = registered
        resp = _form_login(c, password="Wrong!Pass1")
        assert resp.status_code == 302
        assert _query(resp.headers["location"])["error"] == ["bad_credentials"]
        names = {h.split("=", 1)[0] for h in resp.headers.get_list("set-cookie")}
        assert "access_token" not in names

    def test_local_next_is_honoured(self, registered) -> None:
        c, _, _ = registered
        assert _form_login(c, next_url="/profile/api").headers["location"] == "/profile/api"

    @pytest.mark.parametrize("next_url", ["https://evil.example.com/", "//evil.example.com"])
    def test_offsite_next_is_ignored(self, registered, next_url: str) -> None:
        c, _, _ = registered
        assert _form_login(c, next_url=next_url).headers["location"] == "/profile"

    def test_login_page_redirects_when_already_signed_in(self, registered) -> None:
        c, _, _ = registered
        _form_login(c)
        resp = c.get("/auth/login", headers=HTML)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/profile"

    def test_login_page_renders_known_error_only(self, client) -> None:
        c, _, _ = client
        known = c.get("/auth/login?error=session_expired")
        assert known.status_code == 200
        assert "Your session has expired" in known.text

        unknown = c.get("/auth/login?error=<script>alert(1)</script>")
        assert unknown.status_code == 200
        assert "<script>" not in unknown.text

    def test_login_page_lists_configured_providers(self, oauth_client) -> None:
        c, _, _ = oauth_client
        text = c.get("/auth/login").text
        assert 'href="/auth/google"' in text
        assert 'href="/auth/github"' in text


class TestFormRegisterAndLogout:
    def test_register_redirects_to_login(self, client) -> None:
        c, store, _ = client
        resp = c.post("/auth/register", data={"email": EMAIL, "password": PASSWORD})
        assert resp.status_code == 303
        assert resp.headers["location"] == "/auth/login"
        assert store.find_by_email(EMAIL) is not None

    def test_register_duplicate_email(self, registered) -> None:
        c, _, _ = registered
        resp = c.post("/auth/register", data={"email": EMAIL, "password": PASSWORD})
        assert _query(resp.headers["location"])["error"] == ["email_in_use"]

    def test_register_weak_password(self, client) -> None:
        c, _, _ = client
        resp = c.post("/auth/register", data={"email": EMAIL, "password": "weakpass"})
        assert _query(resp.headers["location"])["error"] == ["invalid_registration"]

    def test_logout_revokes_and_redirects(self, registered) -> None:
        c, store, _ = registered
        _form_login(c)
        assert store.find_by_email(EMAIL).refresh_token_hash is not None

        resp = c.post("/auth/logout")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/auth/login"
        assert store.find_by_email(EMAIL).refresh_token_hash is None
        assert c.get("/profile", headers=HTML).status_code == 302

    def test_logout_without_session_still_redirects(self, client) -> None:
        c, _, _ = client
        assert c.post("/auth/logout").status_code == 302


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


def _stub_exchange(monkeypatch, result):
    """Replace the provider round trip with a fixed profile or error."""

    async def fake_exchange(client, provider, request):
        if isinstance(result, Exception):
            raise result
        return result

    monkeypatch.setattr(web.routes, "exchange_code", fake_exchange)


def _google(sub: str = "g-100", email: str | None = "fed@example.com") -> FederatedProfile:
    return FederatedProfile(provider="google", provider_user_id=sub, display_name="Fed", email=email)


class TestOAuthRoutes:
    def test_redirect_to_provider(self, oauth_client) -> None:
        c, _, _ = oauth_client
        provider_client = c.app.state.oauth.create_client.return_value
        provider_client.authorize_redirect = AsyncMock(
            return_value=RedirectResponse("https://accounts.google.com/o/oauth2/auth?state=s", status_code=302)
        )
        resp = c.get("/auth/google")
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("https://accounts.google.com/")
        redirect_uri = provider_client.authorize_redirect.await_args.args[1]
        assert redirect_uri.endswith("/auth/google/redirect")

    @pytest.mark.parametrize("provider", ["google", "facebook"])
    def test_disabled_or_unknown_provider(self, client, provider: str) -> None:
        c, _, _ = client
        resp = c.get(f"/auth/{provider}")
        assert resp.status_code == 302
        assert _query(resp.headers["location"])["error"] == ["oauth_failed"]

    def test_callback_creates_account_and_starts_session(self, oauth_client, monkeypatch) -> None:
        c, store, _ = oauth_client
        _stub_exchange(monkeypatch, _google())
        resp = c.get("/auth/google/redirect?code=abc&state=s")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/profile"

        user = store.find_by_provider_id("google", "g-100")
        assert user is not None
        assert user.password_hash is None
        assert user.refresh_token_hash is not None
        assert c.get("/profile/api").json()["google_id"] == "g-100"

    def test_callback_returns_existing_account(self, oauth_client, monkeypatch) -> None:
        c, store, _ = oauth_client
        _stub_exchange(monkeypatch, _google())
        c.get("/auth/google/redirect?code=abc&state=s")
        first_id = store.find_by_provider_id("google", "g-100").id
        c.get("/auth/google/redirect?code=def&state=t")
        assert store.find_by_provider_id("google", "g-100").id == first_id

    def test_callback_email_collision_is_refused(self, oauth_client, monkeypatch) -> None:
        c, store, _ = oauth_client
        c.post("/api/v1/auth/register", json={"email": "fed@example.com", "password": PASSWORD})
        _stub_exchange(monkeypatch, _google())
        resp = c.get("/auth/google/redirect?code=abc&state=s")
        assert _query(resp.headers["location"])["error"] == ["email_in_use"]
        assert store.find_by_email("fed@example.com").google_id is None

    def test_callback_exchange_failure(self, oauth_client, monkeypatch) -> None:
        c, _, _ = oauth_client
        _stub_exchange(monkeypatch, OAuthExchangeError("denied"))
        resp = c.get("/auth/google/redirect?error=access_denied")
        assert _query(resp.headers["location"])["error"] == ["oauth_failed"]

    def test_callback_without_verified_email(self, oauth_client, monkeypatch) -> None:
        c, _, _ = oauth_client
        _stub_exchange(monkeypatch, _google(email=None))
        resp = c.get("/auth/google/redirect?code=abc&state=s")
        assert _query(resp.headers["location"])["error"] == ["oauth_failed"]


# ---------------------------------------------------------------------------
# exchange_code -- provider profile normalization
# ---------------------------------------------------------------------------


class _FakeResponse:
    def __init__(self, payload):
        self._payload = payload

    def raise_for_status(self) -> None:
        pass

    def json(self):
        return self._payload


class _FakeGitHub:
    def __init__(self, emails):
        self._emails = emails

    async def authorize_access_token(self, request):
        return {"access_token": "gho_x"}

    async def get(self, path, token):
        if path == "user":
            return _FakeResponse({"id": 4242, "login": "octo", "name": None, "avatar_url": "https://a/x.png"})
        return _FakeResponse(self._emails)


class _FakeGoogle:
    def __init__(self, userinfo):
        self._userinfo = userinfo

    async def authorize_access_token(self, request):
        return {"access_token": "ya29", "userinfo": self._userinfo}


class TestExchangeCode:
    def test_github_uses_primary_verified_email(self) -> None:
        client = _FakeGitHub(
            [
                {"email": "old@example.com", "primary": False, "verified": True},
                {"email": "octo@example.com", "primary": True, "verified": True},
            ]
        )
        profile = asyncio.run(exchange_code(client, "github", request=None))
        assert profile.provider_user_id == "4242"
        assert profile.display_name == "octo"
        assert profile.email == "octo@example.com"

    def test_github_unverified_primary_email_dropped(self) -> None:
        client = _FakeGitHub([{"email": "octo@example.com", "primary": True, "verified": False}])
        assert asyncio.run(exchange_code(client, "github", request=None)).email is None

    def test_google_unverified_email_dropped(self) -> None:
        client = _FakeGoogle({"sub": "g-1", "email": "x@example.com", "email_verified": False})
        profile = asyncio.run(exchange_code(client, "google", request=None))
        assert profile.provider_user_id == "g-1"
        assert profile.email is None

    def test_google_verified_email_kept(self) -> None:
        client = _FakeGoogle({"sub": "g-1", "email": "x@example.com", "email_verified": True, "name": "X"})
        assert asyncio.run(exchange_code(client, "google", request=None)).email == "x@example.com"

    def test_malformed_provider_response_is_exchange_error(self) -> None:
        client = _FakeGoogle({"email": "x@example.com"})
        with pytest.raises(OAuthExchangeError):
            asyncio.run(exchange_code(client, "google", request=None))
