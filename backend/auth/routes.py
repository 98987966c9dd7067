"""
Authentication API endpoints.

This module provides REST API endpoints for:
- User signup (returns a token right away)
- Login with email and password
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

import schemas
from storage import DuplicateUserError, Storage, get_storage
from auth.security import hash_password, verify_password, create_user_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/signup", response_model=schemas.AuthResponse, status_code=status.HTTP_201_CREATED)
def signup(request: schemas.SignupRequest, storage: Storage = Depends(get_storage)):
    """
    Register a new user account and log it in.

    Raises:
        HTTPException: 409 if the email or username is already taken
    """
    logger.info(f"Signup attempt for email: {request.email}")

    # Hashed outside the store lock
    password_hash = hash_password(request.password)

    try:
        user = storage.create_user(
            username=request.username,
            email=request.email,
            password_hash=password_hash,
            name=request.name,
        )
    except DuplicateUserError as e:
        logger.info(f"Signup failed: {e.field} already taken: {request.email} / {request.username}")
        detail = "Email already in use" if e.field == "email" else "Username already taken"
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)

    logger.info(f"User registered successfully: {user.email} (ID: {user.id})")
    return {"message": "User created successfully", "token": create_user_token(user), "user": user}


@router.post("/login", response_model=schemas.AuthResponse)
def login(request: schemas.LoginRequest, storage: Storage = Depends(get_storage)):
    """
    Login with email and password.

    Raises:
        HTTPException: 401 if the credentials are invalid
    """
    logger.info(f"Login attempt for email: {request.email}")

    user = storage.get_user_by_email(request.email)
    if not user or not verify_password(request.password, user.password_hash):
        logger.info(f"Login failed for email: {request.email}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    logger.info(f"User logged in successfully: {user.email} (ID: {user.id})")
    return {"message": "Authentication successful", "token": create_user_token(user), "user": user}
