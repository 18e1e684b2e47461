"""
auth/tokens.py -- Token Service: JWT minting, verification, and cookie placement.

Security design decisions:
  JWT: python-jose with HS256. Every token carries sub (user id), email,
       type ("access" | "refresh"), iat, exp, and a random jti. The jti makes
       two pairs minted within the same second distinct, which rotation
       depends on.

  Two keys: access tokens are signed with SECRET_KEY, refresh tokens with
       REFRESH_SECRET_KEY. A leaked access token cannot be replayed at the
       refresh endpoint -- it does not even verify there.

  Verification raises, it does not return None. Callers needing diagnostics
       can tell ExpiredToken, InvalidSignature, and WrongType apart; the HTTP
       boundary collapses all three to a generic 401. Expiry is always read
       from the signed exp claim, never from any local cache.

  Cookies: both cookies are httpOnly, SameSite=Lax (sent on same-site
       requests and top-level cross-site navigations only), and Secure in
       production. The access cookie is scoped to "/" with the access
       lifetime; the refresh cookie is scoped to the refresh endpoint only,
       with the refresh lifetime, so it is never sent on ordinary requests.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError

from auth.errors import ExpiredToken, InvalidSignature, InvalidToken, WrongType
from auth.models import TokenClaims, TokenPair, User
from core.config import Settings

logger = logging.getLogger("gatehouse.auth.tokens")

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"
TOKEN_TYPES = (ACCESS, REFRESH)

_REQUIRED_CLAIMS = ("sub", "email", "type", "exp", "iat", "jti")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    """Mints and verifies access/refresh tokens and places them in cookies.

    Constructed once at startup from Settings and shared by the resolver
    flows, the rotation protocol, and the auth guard.

    clock is injectable so tests can mint tokens "in the past" and observe
    expiry without sleeping.
    """

    def __init__(self, settings: Settings, clock: Callable[[], datetime] = _utcnow) -> None:
        self._settings = settings
        self._clock = clock
        self._keys = {
            ACCESS: settings.secret_key,
            REFRESH: settings.refresh_secret_key,
        }
        self._lifetimes = {
            ACCESS: settings.access_token_expire_seconds,
            REFRESH: settings.refresh_token_expire_seconds,
        }

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    def _issue(self, user: User, token_type: str) -> str:
        if user.id is None:
            raise ValueError("cannot issue a token for an unsaved user")
        now = self._clock()
        payload = {
            "sub": user.id,
            "email": user.email,
            "type": token_type,
            "iat": now,
            "exp": now + timedelta(seconds=self._lifetimes[token_type]),
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._keys[token_type], algorithm=_ALGORITHM)

    def issue_access_token(self, user: User) -> str:
        """Return a short-lived signed access token for user."""
        return self._issue(user, ACCESS)

    def issue_refresh_token(self, user: User) -> str:
        """Return a long-lived signed refresh token for user."""
        return self._issue(user, REFRESH)

    def issue_pair(self, user: User) -> TokenPair:
        """Mint an access and a refresh token for the same subject and email."""
        return TokenPair(
            access_token=self.issue_access_token(user),
            refresh_token=self.issue_refresh_token(user),
            access_expires_in=self._lifetimes[ACCESS],
            refresh_expires_in=self._lifetimes[REFRESH],
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, token: str, expected_type: str) -> TokenClaims:
        """Verify token as expected_type and return its claims.

        Raises:
            ExpiredToken:     signature valid, exp in the past. subject_id set.
            WrongType:        token is a valid token of the other type. subject_id set.
            InvalidSignature: signature does not verify under either key.
            InvalidToken:     malformed token or missing claims.
        """
        if expected_type not in TOKEN_TYPES:
            raise ValueError(f"Unknown token type: {expected_type!r}")
        if not token:
            raise InvalidToken("empty token")

        try:
            payload = jwt.decode(token, self._keys[expected_type], algorithms=[_ALGORITHM])
        except ExpiredSignatureError:
            expired = self._decode_ignoring_expiry(token, expected_type)
            raise ExpiredToken(subject_id=expired.get("sub") if expired else None) from None
        except JWTError as exc:
            other = REFRESH if expected_type == ACCESS else ACCESS
            mistyped = self._decode_ignoring_expiry(token, other)
            if mistyped is not None:
                logger.warning("%s token presented where %s token expected", other, expected_type)
                raise WrongType(
                    f"expected {expected_type} token, got {other} token",
                    subject_id=mistyped.get("sub"),
                ) from None
            raise InvalidSignature(str(exc)) from None

        missing = [claim for claim in _REQUIRED_CLAIMS if claim not in payload]
        if missing:
            raise InvalidToken(f"missing claims: {missing}")
        if payload["type"] != expected_type:
            raise WrongType(
                f"expected {expected_type} token, got {payload['type']!r}",
                subject_id=str(payload["sub"]),
            )

        return TokenClaims(
            subject_id=str(payload["sub"]),
            email=payload["email"],
            token_type=payload["type"],
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            token_id=payload["jti"],
        )

    def _decode_ignoring_expiry(self, token: str, token_type: str) -> dict | None:
        """Return the payload if the signature verifies under token_type's key."""
        try:
            return jwt.decode(
                token,
                self._keys[token_type],
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError:
            return None

    # ------------------------------------------------------------------
    # Cookie placement
    # ------------------------------------------------------------------

    def set_token_cookies(self, response, pair: TokenPair) -> None:
        """Write both tokens as httpOnly cookies on a Starlette response.

        max_age matches each token's lifetime so cookie and token expire
        together.
        """
        cfg = self._settings
        response.set_cookie(
            cfg.access_cookie_name,
            value=pair.access_token,
            max_age=pair.access_expires_in,
            path="/",
            httponly=True,
            samesite="lax",
            secure=cfg.cookies_secure,
        )
        response.set_cookie(
            cfg.refresh_cookie_name,
            value=pair.refresh_token,
            max_age=pair.refresh_expires_in,
            path=cfg.refresh_path,
            httponly=True,
            samesite="lax",
            secure=cfg.cookies_secure,
        )

    def clear_access_cookie(self, response) -> None:
        """Expire the access cookie only, leaving the refresh cookie in place."""
        cfg = self._settings
        response.delete_cookie(
            cfg.access_cookie_name, path="/", httponly=True, samesite="lax", secure=cfg.cookies_secure
        )

    def clear_token_cookies(self, response) -> None:
        """Expire both token cookies. Paths must match the ones used to set them."""
        cfg = self._settings
        self.clear_access_cookie(response)
        response.delete_cookie(
            cfg.refresh_cookie_name,
            path=cfg.refresh_path,
            httponly=True,
            samesite="lax",
            secure=cfg.cookies_secure,
        )
