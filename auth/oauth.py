"""
auth/oauth.py -- Authlib OAuth provider registry and code exchange.

build_oauth(settings) creates the registry once at startup; api/main.py stores
it on app.state.oauth. Nothing registers providers at import time. Only
providers with both client ID and secret configured are registered -- the
login page renders buttons from get_enabled_providers().

exchange_code() is the single async step per provider: authorization code
in, normalized FederatedProfile out. Network timeouts are enforced by the
underlying httpx client; each login is independent, so there is no ordering
between concurrent exchanges.

Security notes:
  [H1] A provider email is only carried into the profile when the provider
       confirms it is verified (Google email_verified, GitHub primary+verified
       entry). Unverified addresses come through as email=None; the resolver
       refuses to create an account without an email, but an already-linked
       account still logs in by provider id.

  OAuth state parameter (CSRF protection) is handled by authlib automatically
  via Starlette SessionMiddleware.

Supported providers:
  google -- Authorization code flow; OIDC discovery.
  github -- Authorization code flow; static endpoints.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

import httpx
from authlib.integrations.starlette_client import OAuth, OAuthError

from auth.errors import OAuthExchangeError
from auth.models import FederatedProfile
from core.config import Settings

logger = logging.getLogger("gatehouse.auth.oauth")

_HTTP_TIMEOUT_SECONDS = 10.0

_PROVIDER_LABELS = {"google": "Google", "github": "GitHub"}


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def build_oauth(settings: Settings) -> OAuth:
    """Return an authlib registry with every configured provider registered."""
    oauth = OAuth()

    if settings.google_enabled:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile", "timeout": _HTTP_TIMEOUT_SECONDS},
        )
        logger.info("Google OAuth provider registered")

    if settings.github_enabled:
        oauth.register(
            name="github",
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email", "timeout": _HTTP_TIMEOUT_SECONDS},
        )
        logger.info("GitHub OAuth provider registered")

    return oauth


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return [{"name", "label"}] for every configured provider.

    Used by GET /api/v1/auth/providers, the login page, and to validate the
    {provider} path segment before any redirect.
    """
    providers: list[dict] = []
    if settings.google_enabled:
        providers.append({"name": "google", "label": _PROVIDER_LABELS["google"]})
    if settings.github_enabled:
        providers.append({"name": "github", "label": _PROVIDER_LABELS["github"]})
    return providers


# ---------------------------------------------------------------------------
# Code exchange -- provider-specific normalization [H1]
# ---------------------------------------------------------------------------


async def exchange_code(client, provider: str, request) -> FederatedProfile:
    """Exchange the callback's authorization code and return the profile.

    Args:
        client:   The authlib client for this provider (registry.create_client()).
        provider: "google" or "github".
        request:  The Starlette request carrying the callback query string and
                  the session-held OAuth state.

    Raises:
        OAuthExchangeError: state mismatch, denied consent, network failure,
                            or a malformed provider response.
    """
    try:
        token = await client.authorize_access_token(request)
        if provider == "google":
            return await _google_profile(client, token)
        if provider == "github":
            return await _github_profile(client, token)
    except OAuthError as exc:
        logger.warning("%s OAuth exchange failed: %s", provider, exc.error)
        raise OAuthExchangeError(f"{provider} exchange failed") from exc
    except (httpx.HTTPError, KeyError, ValueError) as exc:
        logger.warning("%s OAuth profile fetch failed: %s", provider, type(exc).__name__)
        raise OAuthExchangeError(f"{provider} profile fetch failed") from exc
    raise OAuthExchangeError(f"Unknown OAuth provider: {provider!r}")


async def _google_profile(client, token: dict) -> FederatedProfile:
    """Build a profile from Google's OIDC userinfo.

    authlib parses the id_token into token["userinfo"] when the openid scope
    is granted; fall back to the userinfo endpoint otherwise.
    """
    userinfo = token.get("userinfo") or await client.userinfo(token=token)
    subject = userinfo.get("sub")
    if not subject:
        raise ValueError("google userinfo has no sub claim")

    email = userinfo.get("email") if userinfo.get("email_verified", False) else None
    return FederatedProfile(
        provider="google",
        provider_user_id=str(subject),
        display_name=userinfo.get("name"),
        avatar_url=userinfo.get("picture"),
        email=email,
    )


async def _github_profile(client, token: dict) -> FederatedProfile:
    """Build a profile from the GitHub REST API.

    GitHub does not include a verified email in the token. GET /user gives the
    numeric id (stable subject), login, and avatar; GET /user/emails gives
    the primary verified address. Only an entry with primary=true AND
    verified=true is accepted [H1].
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()
    email: str | None = None
    for entry in emails_resp.json():
        if entry.get("primary") and entry.get("verified"):
            email = entry["email"]
            break

    return FederatedProfile(
        provider="github",
        provider_user_id=str(profile["id"]),
        display_name=profile.get("name") or profile.get("login"),
        avatar_url=profile.get("avatar_url"),
        email=email,
    )
