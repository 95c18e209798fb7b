"""
FastAPI Security Dependencies
Dependency injection functions for authentication
"""

import logging
from typing import Any

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from src.db.users import UserDirectory

logger = logging.getLogger(__name__)

# HTTP Bearer security scheme with auto_error=False to allow custom error handling
security = HTTPBearer(auto_error=False)

ERROR_UNAUTHORIZED = "Unauthorized"
ERROR_INVALID_TOKEN = "Invalid authentication token"


def get_user_directory() -> UserDirectory:
    """Provide the Supabase user directory (overridden in tests)."""
    return UserDirectory()


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    users: UserDirectory = Depends(get_user_directory),
) -> dict[str, Any]:
    """
    Resolve the caller from a Supabase session token.

    Args:
        credentials: Bearer credentials from the Authorization header
        users: User directory used to validate the token

    Returns:
        ``{"id", "email"}`` of the authenticated user

    Raises:
        HTTPException: 401 if the header is missing or the token is invalid
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail=ERROR_UNAUTHORIZED)

    user = users.get_user_from_token(credentials.credentials)
    if not user:
        raise HTTPException(status_code=401, detail=ERROR_INVALID_TOKEN)

    return user
