"""
Single-use, time-bounded account tokens (email verification, password reset).

Only the SHA-256 of a token is stored.  Redemption checks ``used`` and
``expires_at`` at redemption time and flips ``used`` with a conditional
UPDATE, so a token can be spent exactly once even under concurrent
submissions.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from auth.password import hash_password
from database.helpers import get_user, get_user_by_email, to_uuid
from database.models import User, VerificationToken
from utils.clock import as_utc, utcnow
from utils.errors import TokenExpired, TokenInvalid

logger = logging.getLogger(__name__)

EMAIL_VERIFICATION = "email_verification"
PASSWORD_RESET = "password_reset"


def _hash(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


async def issue_token(
    session: AsyncSession,
    user_id: str | uuid.UUID,
    purpose: str,
    ttl_seconds: int,
) -> str:
    """
    Create a token for ``purpose``; earlier unused tokens of the same
    purpose are invalidated.  Returns the raw token (to be delivered by
    mail; never logged).
    """
    now = utcnow()
    uid = to_uuid(user_id)
    await session.execute(
        update(VerificationToken)
        .where(
            VerificationToken.user_id == uid,
            VerificationToken.purpose == purpose,
            VerificationToken.used.is_(False),
        )
        .values(used=True, used_at=now)
        .execution_options(synchronize_session=False)
    )
    token = secrets.token_urlsafe(32)
    session.add(
        VerificationToken(
            token_hash=_hash(token),
            user_id=uid,
            purpose=purpose,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
    )
    await session.flush()
    logger.info("Issued %s token for user %s", purpose, uid)
    return token


async def redeem_token(session: AsyncSession, token: str, purpose: str) -> uuid.UUID:
    """Spend ``token`` and return the owning user id."""
    if not token:
        raise TokenInvalid("Token missing")
    token_hash = _hash(token)
    result = await session.execute(
        select(VerificationToken).where(
            VerificationToken.token_hash == token_hash,
            VerificationToken.purpose == purpose,
        )
    )
    row = result.scalar_one_or_none()
    if row is None or row.used:
        raise TokenInvalid("Token is invalid or has been used")

    now = utcnow()
    if now >= as_utc(row.expires_at):
        raise TokenExpired("Token has expired. Please request a new one.")

    spent = await session.execute(
        update(VerificationToken)
        .where(VerificationToken.token_id == row.token_id, VerificationToken.used.is_(False))
        .values(used=True, used_at=now)
        .execution_options(synchronize_session=False)
    )
    if spent.rowcount != 1:
        raise TokenInvalid("Token is invalid or has been used")
    return row.user_id


async def verify_email(session: AsyncSession, token: str) -> User:
    """Redeem a verification token; ``email_verified`` flips once and stays."""
    user_id = await redeem_token(session, token, EMAIL_VERIFICATION)
    user = await get_user(session, user_id)
    if user is None:
        raise TokenInvalid("Token is invalid or has been used")
    if not user.email_verified:
        user.email_verified = True
        user.email_verified_at = utcnow()
        logger.info("Email verified for user %s", user.user_id)
    return user


async def request_password_reset(session: AsyncSession, email: str, ttl_seconds: int) -> Optional[str]:
    """
    Issue a reset token for ``email``.  Unknown addresses return None so
    callers can answer identically either way.
    """
    user = await get_user_by_email(session, email)
    if user is None:
        logger.info("Password reset requested for unknown address")
        return None
    return await issue_token(session, user.user_id, PASSWORD_RESET, ttl_seconds)


async def reset_password(session: AsyncSession, token: str, new_password: str) -> User:
    user_id = await redeem_token(session, token, PASSWORD_RESET)
    user = await get_user(session, user_id)
    if user is None:
        raise TokenInvalid("Token is invalid or has been used")
    user.password_hash = hash_password(new_password)
    logger.info("Password reset for user %s", user.user_id)
    return user
