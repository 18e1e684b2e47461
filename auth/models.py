"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; the store, resolver, and token service do the work.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

PROVIDERS = ("google", "github")

# Provider name -> User attribute / store column holding that provider's id.
PROVIDER_FIELDS: dict[str, str] = {
    "google": "google_id",
    "github": "github_id",
}


@dataclass
class User:
    """The canonical identity record.

    One record is reached from up to three sources: a local password, a Google
    id, and a GitHub id. Each provider id is matched only against its own
    field -- two providers reporting the same email are NOT merged.

    password_hash is None for federated-only accounts.
    refresh_token_hash holds the digest of the single active refresh token,
    never the token itself. None means no active refresh session.
    """

    email: str
    id: str | None = None
    username: str | None = None
    password_hash: str | None = None
    google_id: str | None = None
    github_id: str | None = None
    thumbnail: str | None = None
    refresh_token_hash: str | None = None
    created_at: str | None = None

    @property
    def has_password(self) -> bool:
        return self.password_hash is not None

    @property
    def can_authenticate(self) -> bool:
        """True when the account has a local credential or a linked provider."""
        return self.has_password or bool(self.google_id or self.github_id)

    def provider_id(self, provider: str) -> str | None:
        return getattr(self, PROVIDER_FIELDS[provider])


@dataclass(frozen=True)
class FederatedProfile:
    """Normalized result of a provider authorization-code exchange.

    Trusted input once the exchange succeeds. email may be None when the
    provider does not disclose one; the resolver rejects such profiles.
    """

    provider: str
    provider_user_id: str
    display_name: str | None = None
    avatar_url: str | None = None
    email: str | None = None


@dataclass(frozen=True)
class TokenClaims:
    """Verified claims of an access or refresh token."""

    subject_id: str
    email: str
    token_type: str  # "access" or "refresh"
    expires_at: datetime
    issued_at: datetime
    token_id: str  # jti -- unique per issued token


@dataclass(frozen=True)
class TokenPair:
    """An access and a refresh token minted together for the same subject."""

    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_in: int
