"""
api/routes/profile.py -- JSON profile of the signed-in user.

Routes:
  GET /profile/api -- own profile including linked provider ids (requires auth)

Mounted at the application root (no /api/v1 prefix) alongside the browser
/profile page.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.models import ProfileResponse
from auth.guard import get_current_user
from auth.models import User

router = APIRouter()


@router.get("/profile/api", response_model=ProfileResponse)
def profile_api(current_user: User = Depends(get_current_user)) -> ProfileResponse:
    """Return the caller's own profile, including linked provider ids."""
    return ProfileResponse.from_user(current_user)
