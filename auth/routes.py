"""
Auth API routes: register, login, profile, email verification and
password reset.

Route prefix: /auth
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_settings
from auth import verification
from auth.dependencies import db_session, get_current_user_id
from auth.jwt import create_token
from auth.password import MAX_PASSWORD_BYTES, hash_password, verify_password
from config.settings import Settings
from database.helpers import create_user, delete_user, get_user, get_user_by_email
from database.models import User
from utils.errors import UserNotFound

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


# ── Request / response schemas ─────────────────────────────────────────


def _fits_bcrypt(password: str) -> str:
    if len(password.encode()) > MAX_PASSWORD_BYTES:
        raise ValueError(f"must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded")
    return password


class RegisterRequest(BaseModel):
    email: str = Field(..., min_length=5, max_length=255)
    password: str = Field(..., min_length=8, max_length=MAX_PASSWORD_BYTES)
    display_name: str | None = Field(default=None, max_length=128)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _fits_bcrypt(value)


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=1)


class ForgotPasswordRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8, max_length=MAX_PASSWORD_BYTES)

    @field_validator("new_password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _fits_bcrypt(value)


class AuthResponse(BaseModel):
    user_id: str
    display_name: str | None
    email: str
    email_verified: bool
    token: str


def _profile(user: User) -> Dict[str, Any]:
    return {
        "user_id": str(user.user_id),
        "display_name": user.display_name,
        "email": user.email,
        "email_verified": bool(user.email_verified),
        "onboarding_completed": bool(user.onboarding_completed),
    }


async def _load_user(session: AsyncSession, user_id: str) -> User:
    user = await get_user(session, user_id)
    if user is None:
        raise UserNotFound(f"User {user_id} not found")
    return user


# ── Endpoints ──────────────────────────────────────────────────────────


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    req: RegisterRequest,
    session: AsyncSession = Depends(db_session),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    """Register a new user and issue an email verification token."""
    if await get_user_by_email(session, req.email) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already registered",
        )

    try:
        user = await create_user(
            session,
            req.email,
            hash_password(req.password),
            display_name=req.display_name,
        )
    except IntegrityError:
        # Lost a race with a concurrent registration for the same address
        await session.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already registered",
        ) from None
    await verification.issue_token(
        session,
        user.user_id,
        verification.EMAIL_VERIFICATION,
        settings.verification_token_ttl_seconds,
    )
    await session.commit()

    logger.info("Registered user %s", user.user_id)
    return {**_profile(user), "token": create_token(str(user.user_id))}


@router.post("/login", response_model=AuthResponse)
async def login(
    req: LoginRequest,
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    """Login with email + password."""
    user = await get_user_by_email(session, req.email)

    if user is None or not verify_password(req.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    logger.info("Login: %s", user.user_id)
    return {**_profile(user), "token": create_token(str(user.user_id))}


@router.get("/me")
async def me(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    return _profile(await _load_user(session, user_id))


@router.delete("/me")
async def delete_account(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    """Delete the account together with its connections and onboarding progress."""
    if not await delete_user(session, user_id):
        raise UserNotFound(f"User {user_id} not found")
    await session.commit()
    return {"success": True}


@router.post("/verify-email")
async def verify_email(
    req: TokenRequest,
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    user = await verification.verify_email(session, req.token)
    await session.commit()
    return {"success": True, "email_verified": bool(user.email_verified)}


@router.post("/resend-verification")
async def resend_verification(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    user = await _load_user(session, user_id)
    if user.email_verified:
        return {"success": True, "already_verified": True}
    await verification.issue_token(
        session,
        user.user_id,
        verification.EMAIL_VERIFICATION,
        settings.verification_token_ttl_seconds,
    )
    await session.commit()
    return {"success": True, "already_verified": False}


@router.post("/forgot-password")
async def forgot_password(
    req: ForgotPasswordRequest,
    session: AsyncSession = Depends(db_session),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    """Always answers the same way so addresses can not be enumerated."""
    await verification.request_password_reset(
        session, req.email, settings.password_reset_token_ttl_seconds
    )
    await session.commit()
    return {"success": True}


@router.post("/reset-password")
async def reset_password(
    req: ResetPasswordRequest,
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    await verification.reset_password(session, req.token, req.new_password)
    await session.commit()
    return {"success": True}
