"""
auth/identity.py -- Identity Resolver: local credentials and federated
profiles converge on one User record.

Three sources reach a user: a local password, a Google id, and a GitHub id.

  signup()            -- validate, reject duplicates, store a bcrypt hash.
  login()             -- constant-time password check with a single generic
                         failure for every bad-credential case.
  resolve_federated() -- find by (provider, provider id) or create a new
                         passwordless record seeded from the profile.

Account linking boundary:
  Each provider id is matched only against its own field. A Google profile
  whose email already belongs to a local or GitHub account is NOT merged into
  it: the insert collides on the unique email and surfaces ConflictError.
  Automatic merging by email would let anyone who controls a provider account
  with a matching address take over the existing record.

Timing equalization [C1]:
  login() always runs bcrypt, against a dummy hash when the email is unknown
  or the account has no password, so response time does not reveal which
  case occurred.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging

from auth.errors import AuthError, ConflictError, DuplicateKey, ValidationError
from auth.models import PROVIDER_FIELDS, FederatedProfile, User
from auth.passwords import check_password_strength, hash_secret, normalize_email, verify_secret
from auth.store import UserStore
from core.config import Settings

logger = logging.getLogger("gatehouse.auth")

_MAX_USERNAME_LENGTH = 255


def _default_username(email: str) -> str:
    return email.split("@", 1)[0]


class IdentityResolver:
    """Finds or creates the canonical user record for each login source."""

    def __init__(self, store: UserStore, settings: Settings) -> None:
        self._store = store
        self._rounds = settings.bcrypt_rounds
        # Computed once so the first failed login is not measurably slower
        # than later ones.
        self._dummy_hash = hash_secret("gatehouse-timing-dummy", rounds=self._rounds)

    # ------------------------------------------------------------------
    # Local credentials
    # ------------------------------------------------------------------

    def signup(self, email: str, password: str, username: str | None = None) -> User:
        """Register a local account and return the stored record.

        Raises:
            ValidationError: email missing/malformed, password too weak,
                             username too long.
            ConflictError:   email already registered. The existing record
                             is not modified.
        """
        normalized = normalize_email(email)
        check_password_strength(password)

        display = (username or "").strip() or _default_username(normalized)
        if len(display) > _MAX_USERNAME_LENGTH:
            raise ValidationError(f"Username must be at most {_MAX_USERNAME_LENGTH} characters.")

        if self._store.find_by_email(normalized) is not None:
            raise ConflictError("Email already in use.")

        try:
            user = self._store.insert(
                User(
                    email=normalized,
                    username=display,
                    password_hash=hash_secret(password, rounds=self._rounds),
                )
            )
        except DuplicateKey as exc:
            # Lost a race with a concurrent signup for the same email.
            raise ConflictError("Email already in use.") from exc

        logger.info("Registered local account %s", user.id)
        return user

    def login(self, email: str, password: str) -> User:
        """Return the user whose local credentials match.

        Raises AuthError("invalid credentials") for an unknown email, a
        federated-only account, and a wrong password alike.
        Raises ValidationError only when either field is empty.
        """
        if not email or not password:
            raise ValidationError("Email and password are required.")

        user = self._store.find_by_email(email)
        if user is None or user.password_hash is None:
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            verify_secret(password, self._dummy_hash)
            raise AuthError()

        # CorruptDigest propagates: a malformed stored hash is an internal fault.
        if not verify_secret(password, user.password_hash):
            raise AuthError()
        return user

    # ------------------------------------------------------------------
    # Federated identity
    # ------------------------------------------------------------------

    def resolve_federated(self, provider: str, provider_id: str, profile: FederatedProfile) -> User:
        """Return the record linked to (provider, provider_id), creating it if new.

        An existing record is returned unchanged -- profile updates on the
        provider side are not synced back.

        Raises:
            ValidationError: unknown provider, empty id, or a new profile
                             with no usable email.
            ConflictError:   the profile email already belongs to a different
                             record (no cross-provider merge).
        """
        if provider not in PROVIDER_FIELDS:
            raise ValidationError(f"Unknown provider: {provider!r}")
        if not provider_id:
            raise ValidationError("Provider user id is required.")

        existing = self._store.find_by_provider_id(provider, provider_id)
        if existing is not None:
            return existing

        email = normalize_email(profile.email)
        display = (profile.display_name or "").strip() or _default_username(email)

        try:
            user = self._store.insert(
                User(
                    email=email,
                    username=display[:_MAX_USERNAME_LENGTH],
                    thumbnail=profile.avatar_url or None,
                    **{PROVIDER_FIELDS[provider]: provider_id},
                )
            )
        except DuplicateKey as exc:
            if exc.field == PROVIDER_FIELDS[provider]:
                # Concurrent first login for the same provider id won the insert.
                winner = self._store.find_by_provider_id(provider, provider_id)
                if winner is not None:
                    return winner
            raise ConflictError(
                "Email already registered with a different sign-in method.",
                detail={"provider": provider},
            ) from exc

        logger.info("Registered %s account %s", provider, user.id)
        return user
