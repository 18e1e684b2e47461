"""
auth/passwords.py -- Password Hasher and credential input policy.

Security design decisions:
  Hashing: bcrypt used directly (no passlib wrapper). Output embeds the salt
       and cost factor, so verify_secret() needs nothing but the digest. The
       cost factor comes from Settings.bcrypt_rounds (default 10).

  Two purposes, one primitive: login passwords and refresh-token digests both
       go through bcrypt. Refresh tokens are SHA-256 pre-hashed first
       (hash_token / verify_token) because bcrypt only reads the first 72
       bytes of its input and two JWTs for the same subject share a prefix
       longer than that. Without the pre-hash, a rotated-out token would
       still match the new digest.

  Mismatch vs corruption: verify_secret() returns False on a wrong secret and
       raises CorruptDigest only when the stored digest itself is malformed.
       A corrupt digest is an invariant violation, never a silent "no".

  Passwords longer than 72 UTF-8 bytes are rejected by check_password_strength()
  rather than truncated.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import hashlib
import re

import bcrypt

from auth.errors import CorruptDigest, ValidationError

_BCRYPT_MAX_BYTES = 72

# Deliberately permissive local@domain.tld shape check. Deliverability is not
# verified (no email verification flow).
_EMAIL_RE = re.compile(r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)+$")

MIN_PASSWORD_LENGTH = 8
_PASSWORD_CLASSES: tuple[tuple[str, re.Pattern], ...] = (
    ("a lowercase letter", re.compile(r"[a-z]")),
    ("an uppercase letter", re.compile(r"[A-Z]")),
    ("a digit", re.compile(r"[0-9]")),
    ("a symbol", re.compile(r"[^A-Za-z0-9]")),
)


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def hash_secret(secret: str, rounds: int = 10) -> str:
    """Return a salted bcrypt digest of secret."""
    return bcrypt.hashpw(secret.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_secret(secret: str, digest: str) -> bool:
    """Return True if secret matches digest. Constant-time inside bcrypt.

    Raises CorruptDigest if digest is not a well-formed bcrypt hash. Secrets
    over 72 bytes never match (bcrypt refuses them) -- they cannot have been
    hashed by hash_secret() on a current bcrypt either.
    """
    try:
        digest_bytes = digest.encode("utf-8")
    except (AttributeError, UnicodeEncodeError) as exc:
        raise CorruptDigest("stored digest is not text") from exc

    secret_bytes = secret.encode("utf-8")
    if len(secret_bytes) > _BCRYPT_MAX_BYTES:
        _check_digest_shape(digest)
        return False
    try:
        return bcrypt.checkpw(secret_bytes, digest_bytes)
    except ValueError as exc:
        # bcrypt raises ValueError("Invalid salt") for malformed digests.
        raise CorruptDigest("stored digest is malformed") from exc


def _check_digest_shape(digest: str) -> None:
    if not re.fullmatch(r"\$2[abxy]?\$\d{2}\$[./A-Za-z0-9]{53}", digest):
        raise CorruptDigest("stored digest is malformed")


def _token_prehash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def hash_token(token: str, rounds: int = 10) -> str:
    """Return the storable digest of a refresh token."""
    return hash_secret(_token_prehash(token), rounds=rounds)


def verify_token(token: str, digest: str) -> bool:
    """Return True if token matches a digest produced by hash_token()."""
    return verify_secret(_token_prehash(token), digest)


# ---------------------------------------------------------------------------
# Input policy
# ---------------------------------------------------------------------------


def normalize_email(email: str | None) -> str:
    """Return the lowercase comparison key for an email. Raises ValidationError."""
    if not email or not email.strip():
        raise ValidationError("Email is required.")
    normalized = email.strip().lower()
    if len(normalized) > 254 or not _EMAIL_RE.match(normalized):
        raise ValidationError("Invalid email.")
    return normalized


def check_password_strength(password: str | None) -> None:
    """Raise ValidationError unless password satisfies the strength policy.

    Policy: at least 8 characters, at most 72 UTF-8 bytes, and at least one
    character from each class (lowercase, uppercase, digit, symbol).
    """
    if not password:
        raise ValidationError("Password is required.")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if len(password.encode("utf-8")) > _BCRYPT_MAX_BYTES:
        raise ValidationError(f"Password must be at most {_BCRYPT_MAX_BYTES} bytes.")
    missing = [label for label, pattern in _PASSWORD_CLASSES if not pattern.search(password)]
    if missing:
        raise ValidationError(
            "Password not strong enough.",
            detail={"missing": missing},
        )
