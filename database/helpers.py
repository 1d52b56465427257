"""
Database helper functions: schema bootstrap and user-record access.

"""

from __future__ import annotations

import logging
import uuid
from typing import Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from database.models import (
    Base,
    BusinessType,
    OAuthState,
    OnboardingProgress,
    User,
    UserConnection,
    VerificationToken,
)

logger = logging.getLogger(__name__)


def to_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return uuid.UUID(value) if isinstance(value, str) else value


def normalize_email(email: str) -> str:
    return email.strip().lower()


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet (idempotent)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_user(session: AsyncSession, user_id: str | uuid.UUID) -> Optional[User]:
    return await session.get(User, to_uuid(user_id))


async def get_user_by_email(session: AsyncSession, email: str) -> Optional[User]:
    result = await session.execute(
        select(User).where(User.email == normalize_email(email))
    )
    return result.scalar_one_or_none()


async def create_user(
    session: AsyncSession,
    email: str,
    password_hash: str,
    display_name: str | None = None,
) -> User:
    user = User(
        user_id=uuid.uuid4(),
        email=normalize_email(email),
        display_name=display_name,
        password_hash=password_hash,
    )
    session.add(user)
    await session.flush()
    return user


async def delete_user(session: AsyncSession, user_id: str | uuid.UUID) -> bool:
    """
    Delete a user and everything it owns.

    Child rows are removed explicitly so the cascade also holds on
    databases that do not enforce foreign keys (SQLite).
    """
    uid = to_uuid(user_id)
    for model in (UserConnection, OAuthState, OnboardingProgress, VerificationToken):
        await session.execute(delete(model).where(model.user_id == uid))
    result = await session.execute(delete(User).where(User.user_id == uid))
    deleted = result.rowcount > 0
    if deleted:
        logger.info("Deleted user %s and owned records", uid)
    return deleted


async def seed_business_types(session: AsyncSession, items: Iterable[dict]) -> int:
    """Insert catalog rows whose slug is not present yet. Returns rows added."""
    existing = set((await session.execute(select(BusinessType.slug))).scalars().all())
    added = 0
    for item in items:
        if item["slug"] in existing:
            continue
        session.add(BusinessType(**item))
        added += 1
    if added:
        await session.flush()
        logger.info("Seeded %d business types", added)
    return added
