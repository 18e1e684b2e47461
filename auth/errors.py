"""
auth/errors.py -- Typed error taxonomy for the auth core.

Every error carries a stable error_code and the HTTP status the boundary maps
it to. The core raises these; only api/main.py (exception handlers) and
auth/guard.py translate them into transport-level responses.

Token failures are deliberately distinguishable (ExpiredToken vs
InvalidSignature vs WrongType) for logging and diagnostics, but they all
collapse to a generic 401 "unauthorized" at the HTTP boundary.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from typing import Optional


class GatehouseError(Exception):
    """Base class for auth-core errors mapped to HTTP responses."""

    status_code: int = 400
    error_code: str = "error"
    public_message: Optional[str] = None

    def __init__(self, message: str = "", *, detail: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def client_message(self) -> str:
        """Message safe to show the client. Falls back to the raw message."""
        return self.public_message or self.message


class ValidationError(GatehouseError):
    """Bad input shape or strength (400). User-fixable."""

    status_code = 400
    error_code = "validation_error"


class ConflictError(GatehouseError):
    """Duplicate email or provider id (409)."""

    status_code = 409
    error_code = "conflict"


class AuthError(GatehouseError):
    """Bad credentials (401).

    The message is fixed. Unknown email, federated-only account, and wrong
    password must be indistinguishable to the caller.
    """

    status_code = 401
    error_code = "bad_credentials"
    public_message = "invalid credentials"

    def __init__(self, message: str = "invalid credentials", *, detail: Optional[dict] = None) -> None:
        super().__init__(message, detail=detail)


class Unauthorized(GatehouseError):
    """Generic authentication failure at the boundary (401)."""

    status_code = 401
    error_code = "unauthorized"
    public_message = "Authentication required."


class TokenError(Unauthorized):
    """Base for token verification failures. Always rendered as Unauthorized."""


class InvalidToken(TokenError):
    """Token is malformed, unknown to the store, or does not match the stored digest."""


class InvalidSignature(InvalidToken):
    """Token signature does not verify under the expected key."""


class ExpiredToken(TokenError):
    """Token signature is valid but its expiry has passed.

    subject_id is set when the signature verified, so the rotation protocol
    can revoke the subject's session (fail-closed).
    """

    def __init__(self, message: str = "token expired", *, subject_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.subject_id = subject_id


class WrongType(TokenError):
    """A valid token of the other type was presented (access vs refresh).

    subject_id is set from the verified payload, so the rotation protocol
    can revoke the subject's session when an access token is offered for
    refresh.
    """

    def __init__(self, message: str = "wrong token type", *, subject_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.subject_id = subject_id


class CorruptDigest(GatehouseError):
    """A stored digest is malformed. Internal invariant violation (500)."""

    status_code = 500
    error_code = "internal_error"
    public_message = "An unexpected error occurred."


class OAuthExchangeError(GatehouseError):
    """The provider authorization-code exchange or profile fetch failed (401)."""

    status_code = 401
    error_code = "oauth_failed"
    public_message = "OAuth authentication failed."


class DuplicateKey(GatehouseError):
    """Persistence-layer uniqueness violation. Mapped to ConflictError by callers."""

    status_code = 409
    error_code = "conflict"

    def __init__(self, field: str, message: str = "") -> None:
        super().__init__(message or f"duplicate value for {field}")
        self.field = field


__all__ = [
    "GatehouseError",
    "ValidationError",
    "ConflictError",
    "AuthError",
    "Unauthorized",
    "TokenError",
    "InvalidToken",
    "InvalidSignature",
    "ExpiredToken",
    "WrongType",
    "CorruptDigest",
    "OAuthExchangeError",
    "DuplicateKey",
]
