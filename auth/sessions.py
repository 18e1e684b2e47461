"""
auth/sessions.py -- Refresh/Rotation Protocol.

The lifecycle of an account's session is carried by one field:

    no session --issue_session()--> active --refresh()--> active (rotated)
        ^                              |
        +------ logout() / any refresh failure (revoked) ------+

The only server-side state is User.refresh_token_hash: the bcrypt digest of
the one refresh token currently valid for the account.

  issue_session() -- mint a pair, store the refresh digest (login, OAuth).
  refresh()       -- exchange the current refresh token for a new pair; the
                     new digest overwrites the old, so the presented token
                     is dead the moment the call returns.
  logout()        -- clear the digest unconditionally. Idempotent.

Fail-closed [R1]: every refresh failure that identifies a subject clears that
subject's digest, forcing a fresh login on every client. A replay of a
rotated-out token therefore also kills the legitimate client's session.
This includes an access token offered for refresh: its signature verifies
under the access key, so its subject is known. Tokens whose signature does
not verify under either key identify nobody and touch no state.

Single active refresh token per account: issuing a new one implicitly
revokes the previous one. Concurrent refreshes for the same account are
last-write-wins; the losing client gets Unauthorized on its next refresh.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging

from auth.errors import CorruptDigest, ExpiredToken, TokenError, Unauthorized, WrongType
from auth.models import TokenPair, User
from auth.passwords import hash_token, verify_token
from auth.store import UserStore
from auth.tokens import REFRESH, TokenService
from core.config import Settings

logger = logging.getLogger("gatehouse.auth.sessions")


class SessionManager:
    """Owns the refresh-token digest lifecycle for every account."""

    def __init__(self, store: UserStore, tokens: TokenService, settings: Settings) -> None:
        self._store = store
        self._tokens = tokens
        self._rounds = settings.bcrypt_rounds

    def issue_session(self, user: User) -> TokenPair:
        """Mint a token pair for user and make its refresh token the active one."""
        pair = self._tokens.issue_pair(user)
        self._store.update_fields(user.id, refresh_token_hash=hash_token(pair.refresh_token, rounds=self._rounds))
        return pair

    def refresh(self, presented: str | None) -> tuple[User, TokenPair]:
        """Rotate: verify presented, then return the user and a brand-new pair.

        Raises Unauthorized on any failure. The specific cause is logged,
        never returned to the caller.
        """
        if not presented:
            raise Unauthorized("refresh token required")

        try:
            claims = self._tokens.verify(presented, REFRESH)
        except ExpiredToken as exc:
            if exc.subject_id:
                self._revoke(exc.subject_id, "expired refresh token")
            raise Unauthorized("refresh token expired") from exc
        except WrongType as exc:
            if exc.subject_id:
                self._revoke(exc.subject_id, "access token presented for refresh")
            raise Unauthorized("invalid refresh token") from exc
        except TokenError as exc:
            logger.warning("Refresh rejected: %s", type(exc).__name__)
            raise Unauthorized("invalid refresh token") from exc

        user = self._store.find_by_id(claims.subject_id)
        if user is None:
            logger.warning("Refresh rejected: unknown subject %s", claims.subject_id)
            raise Unauthorized("invalid refresh token")
        if not user.refresh_token_hash:
            logger.warning("Refresh rejected: no active session for %s", user.id)
            raise Unauthorized("invalid refresh token")

        try:
            matches = verify_token(presented, user.refresh_token_hash)
        except CorruptDigest:
            logger.exception("Corrupt refresh-token digest for user %s", user.id)
            self._revoke(user.id, "corrupt digest")
            raise Unauthorized("invalid refresh token") from None

        if not matches:
            # A validly signed token that is not the current one: either an
            # already-rotated token being replayed or a stolen copy [R1].
            self._revoke(user.id, "refresh token does not match active session")
            raise Unauthorized("invalid refresh token")

        pair = self.issue_session(user)
        return user, pair

    def logout(self, user: User | str) -> None:
        """Clear the active refresh digest. Safe to call repeatedly."""
        user_id = user if isinstance(user, str) else user.id
        self._store.update_fields(user_id, refresh_token_hash=None)

    def _revoke(self, user_id: str, reason: str) -> None:
        logger.warning("Revoking refresh session for %s: %s", user_id, reason)
        self._store.update_fields(user_id, refresh_token_hash=None)
