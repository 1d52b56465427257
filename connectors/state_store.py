"""
OAuth ``state`` store — single-use, short-lived CSRF nonces.

Only the SHA-256 of the state value is persisted.  Consumption is one
conditional UPDATE so exactly one of several concurrent callbacks carrying
the same state can win.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import uuid
from datetime import timedelta
from typing import Tuple

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.helpers import to_uuid
from database.models import OAuthState
from database.session import session_scope
from utils.clock import Clock, utcnow
from utils.errors import InvalidState

logger = logging.getLogger(__name__)


def _hash_state(state: str) -> str:
    return hashlib.sha256(state.encode()).hexdigest()


class OAuthStateStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl_seconds: int = 600,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    async def issue(self, user_id: str | uuid.UUID, provider: str) -> str:
        """Create a new state bound to user + provider + issue time."""
        state = secrets.token_urlsafe(32)
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            session.add(
                OAuthState(
                    state_hash=_hash_state(state),
                    user_id=to_uuid(user_id),
                    provider=provider,
                    created_at=now,
                    expires_at=now + self._ttl,
                )
            )
        return state

    async def consume(self, state: str | None) -> Tuple[uuid.UUID, str]:
        """
        Atomically mark ``state`` consumed and return ``(user_id, provider)``.

        Raises ``InvalidState`` for an empty, unknown, expired or already
        consumed value.
        """
        if not state:
            raise InvalidState("OAuth state missing")
        state_hash = _hash_state(state)
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                update(OAuthState)
                .where(
                    OAuthState.state_hash == state_hash,
                    OAuthState.consumed_at.is_(None),
                    OAuthState.expires_at > now,
                )
                .values(consumed_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidState("OAuth state is invalid, expired or already used")
            row = (
                await session.execute(
                    select(OAuthState.user_id, OAuthState.provider).where(
                        OAuthState.state_hash == state_hash
                    )
                )
            ).one()
        return row.user_id, row.provider

    async def has_pending(self, user_id: str | uuid.UUID, provider: str) -> bool:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(OAuthState.state_hash)
                .where(
                    OAuthState.user_id == to_uuid(user_id),
                    OAuthState.provider == provider,
                    OAuthState.consumed_at.is_(None),
                    OAuthState.expires_at > self._clock(),
                )
                .limit(1)
            )
            return result.first() is not None

    async def purge_expired(self) -> int:
        """Delete expired and consumed states. Returns rows removed."""
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                delete(OAuthState).where(
                    or_(
                        OAuthState.expires_at <= self._clock(),
                        OAuthState.consumed_at.is_not(None),
                    )
                )
            )
            removed = result.rowcount or 0
        if removed:
            logger.info("Purged %d stale OAuth states", removed)
        return removed
