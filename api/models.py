"""
API request and response models for Gatehouse REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Input models only bound sizes. Email shape and password strength are checked
by the identity resolver so the web form and the JSON API share one policy
and one error type.
"""

from typing import Optional

from pydantic import BaseModel, Field

from auth.models import TokenPair, User

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    email: str = Field(max_length=254)
    password: str = Field(max_length=255)
    username: Optional[str] = Field(default=None, max_length=255)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(max_length=254)
    password: str = Field(max_length=255)


class RefreshRequest(BaseModel):
    """Optional body for POST /api/v1/auth/refresh-token (non-cookie clients)."""

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. Never includes digests."""

    id: str
    email: str
    username: Optional[str] = None
    thumbnail: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(id=user.id, email=user.email, username=user.username, thumbnail=user.thumbnail)


class ProfileResponse(UserResponse):
    """Owner's view of their own account, including linked sign-in methods."""

    google_id: Optional[str] = None
    github_id: Optional[str] = None
    has_password: bool = False

    @classmethod
    def from_user(cls, user: User) -> "ProfileResponse":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            thumbnail=user.thumbnail,
            google_id=user.google_id,
            github_id=user.github_id,
            has_password=user.has_password,
        )


class TokenPairResponse(BaseModel):
    """Token pair issued by login and refresh. Also set as httpOnly cookies."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int
    user: UserResponse

    @classmethod
    def from_pair(cls, pair: TokenPair, user: User) -> "TokenPairResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.access_expires_in,
            refresh_expires_in=pair.refresh_expires_in,
            user=UserResponse.from_user(user),
        )


class MessageResponse(BaseModel):
    message: str


class OAuthProviderInfo(BaseModel):
    name: str
    label: str


class ErrorDetail(BaseModel):
    """Structured error payload. code is stable; message is human-readable."""

    code: str
    message: str
    detail: Optional[object] = None


class ErrorResponse(BaseModel):
    """Envelope for every error response: {"error": {...}}."""

    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
