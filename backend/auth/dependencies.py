"""
FastAPI dependencies for authentication.

Every route except login, signup and health resolves the caller through
get_current_user, which reads the JWT bearer token.
"""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

import schemas
from storage import Storage, get_storage
from auth.security import verify_token

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme for JWT authentication
security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    storage: Storage = Depends(get_storage),
) -> schemas.User:
    """
    Extract and validate the current user from the JWT bearer token.

    Returns:
        User record for the token subject

    Raises:
        HTTPException: 401 if the token is missing, invalid, expired, of the
            wrong type, or names a user that does not exist

    Example:
        @app.get("/api/protected")
        def protected_route(user: schemas.User = Depends(get_current_user)):
            return {"user_id": user.id}
    """
    if not credentials or not credentials.credentials:
        logger.info("No authentication credentials provided")
        raise _unauthorized("Authentication required")

    payload = verify_token(credentials.credentials)
    if payload is None:
        raise _unauthorized("Invalid or expired token")

    token_type = payload.get("type")
    if token_type != "access":
        logger.info(f"Invalid token type: {token_type}")
        raise _unauthorized("Invalid token type")

    # Parse user_id safely (malformed tokens should return 401, not 500)
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        logger.info(f"Invalid user_id format in token: {payload.get('sub')}")
        raise _unauthorized("Invalid token payload")

    user = storage.get_user(user_id)
    if user is None:
        logger.info(f"User not found for id: {user_id}")
        raise _unauthorized("User not found")

    logger.debug(f"User authenticated via JWT: {user.email}")
    return user
