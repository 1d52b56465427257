"""
Credential store — (user, provider) → encrypted OAuth token record.

Token fields are encrypted with ``SecretCipher`` before they reach the
database and handed back still encrypted inside ``OAuthConnection``
snapshots.  The ``version`` column is the compare-and-swap token that
serialises refresh / revoke races for a pair.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.encryption import SecretCipher
from connectors.schemas import ConnectionStatus, OAuthConnection, TokenBundle
from database.helpers import to_uuid
from database.models import UserConnection
from database.session import session_scope
from utils.clock import Clock, as_utc, utcnow
from utils.errors import StoreUnavailable

logger = logging.getLogger(__name__)


class CredentialStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: SecretCipher,
        *,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._cipher = cipher
        self._clock = clock

    # ── Reads ───────────────────────────────────────────────────────────

    async def get_connection(self, user_id: str | uuid.UUID, provider: str) -> Optional[OAuthConnection]:
        """Return the stored connection for the pair, whatever its status."""
        async with session_scope(self._session_factory) as session:
            row = await self._load(session, user_id, provider)
            return self._snapshot(row) if row else None

    async def get_active_connection(self, user_id: str | uuid.UUID, provider: str) -> Optional[OAuthConnection]:
        conn = await self.get_connection(user_id, provider)
        if conn is None or conn.status is not ConnectionStatus.ACTIVE:
            return None
        return conn

    async def list_connections(self, user_id: str | uuid.UUID) -> List[OAuthConnection]:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(UserConnection)
                .where(UserConnection.user_id == to_uuid(user_id))
                .order_by(UserConnection.provider)
            )
            return [self._snapshot(row) for row in result.scalars().all()]

    async def list_expiring(self, before: datetime) -> List[OAuthConnection]:
        """ACTIVE connections with a refresh token whose access token expires before ``before``."""
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(UserConnection).where(
                    UserConnection.status == ConnectionStatus.ACTIVE.value,
                    UserConnection.refresh_token.is_not(None),
                    UserConnection.expires_at.is_not(None),
                    UserConnection.expires_at < before,
                )
            )
            return [self._snapshot(row) for row in result.scalars().all()]

    # ── Writes ──────────────────────────────────────────────────────────

    async def upsert_connection(
        self,
        user_id: str | uuid.UUID,
        provider: str,
        bundle: TokenBundle,
    ) -> OAuthConnection:
        """
        Store a freshly authorised connection, replacing whatever the pair
        held before (last write wins).

        Two first-time inserts racing on the (user, provider) unique
        constraint resolve by retrying the loser as an update.
        """
        try:
            return await self._upsert_once(user_id, provider, bundle)
        except StoreUnavailable as exc:
            if not isinstance(exc.__cause__, IntegrityError):
                raise
            logger.info("Concurrent insert for %s/%s, retrying as update", provider, user_id)
            return await self._upsert_once(user_id, provider, bundle)

    async def _upsert_once(self, user_id, provider: str, bundle: TokenBundle) -> OAuthConnection:
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            row = await self._load(session, user_id, provider, for_update=True)
            access = self._cipher.encrypt_token(bundle.access_token)
            refresh = self._cipher.encrypt_token(bundle.refresh_token) if bundle.refresh_token else None

            if row is None:
                row = UserConnection(
                    connection_id=uuid.uuid4(),
                    user_id=to_uuid(user_id),
                    provider=provider,
                    version=1,
                )
                session.add(row)
                logger.info("Created %s connection for user %s", provider, user_id)
            else:
                # Google only returns a refresh token on first consent;
                # keep the previous one when re-authorising an active pair.
                if refresh is None and row.status == ConnectionStatus.ACTIVE.value:
                    refresh = row.refresh_token
                row.version = (row.version or 0) + 1
                logger.info("Replaced %s connection for user %s", provider, user_id)

            row.access_token = access
            row.refresh_token = refresh
            row.token_type = "Bearer"
            row.expires_at = now + timedelta(seconds=bundle.expires_in)
            row.scopes = sorted(set(bundle.scopes))
            row.account_id = bundle.account_id or row.account_id or ""
            row.account_label = bundle.account_label or row.account_label or ""
            row.provider_meta = dict(bundle.provider_meta)
            row.status = ConnectionStatus.ACTIVE.value
            row.connected_at = now
            row.last_refreshed = None
            row.revoked_at = None
            row.error_message = None
            await session.flush()
            return self._snapshot(row)

    async def commit_refresh(
        self,
        user_id: str | uuid.UUID,
        provider: str,
        expected_version: int,
        bundle: TokenBundle,
    ) -> Optional[OAuthConnection]:
        """
        Write a refreshed access token if the row is still ACTIVE at
        ``expected_version``.  Returns ``None`` when another writer got
        there first (a newer refresh, a re-authorisation or a revoke).
        """
        now = self._clock()
        values = {
            "access_token": self._cipher.encrypt_token(bundle.access_token),
            "expires_at": now + timedelta(seconds=bundle.expires_in),
            "last_refreshed": now,
            "error_message": None,
            "version": UserConnection.version + 1,
        }
        # Some providers rotate refresh tokens
        if bundle.refresh_token:
            values["refresh_token"] = self._cipher.encrypt_token(bundle.refresh_token)
        if bundle.scopes:
            values["scopes"] = sorted(set(bundle.scopes))

        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                update(UserConnection)
                .where(
                    UserConnection.user_id == to_uuid(user_id),
                    UserConnection.provider == provider,
                    UserConnection.status == ConnectionStatus.ACTIVE.value,
                    UserConnection.version == expected_version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.info(
                    "Discarded refreshed %s token for user %s (version %d superseded)",
                    provider, user_id, expected_version,
                )
                return None
            row = await self._load(session, user_id, provider, populate_existing=True)
            return self._snapshot(row)

    async def mark_expired(
        self,
        user_id: str | uuid.UUID,
        provider: str,
        expected_version: int,
        reason: str,
    ) -> bool:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                update(UserConnection)
                .where(
                    UserConnection.user_id == to_uuid(user_id),
                    UserConnection.provider == provider,
                    UserConnection.status == ConnectionStatus.ACTIVE.value,
                    UserConnection.version == expected_version,
                )
                .values(
                    status=ConnectionStatus.EXPIRED.value,
                    error_message=reason,
                    version=UserConnection.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            expired = result.rowcount == 1
        if expired:
            logger.info("Marked %s connection for user %s expired: %s", provider, user_id, reason)
        return expired

    async def mark_revoked(self, user_id: str | uuid.UUID, provider: str) -> None:
        """Revoke and clear tokens. Idempotent: absent or already revoked is fine."""
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                update(UserConnection)
                .where(
                    UserConnection.user_id == to_uuid(user_id),
                    UserConnection.provider == provider,
                    UserConnection.status != ConnectionStatus.REVOKED.value,
                )
                .values(
                    status=ConnectionStatus.REVOKED.value,
                    access_token=None,
                    refresh_token=None,
                    revoked_at=self._clock(),
                    version=UserConnection.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            revoked = result.rowcount > 0
        if revoked:
            logger.info("Revoked %s connection for user %s", provider, user_id)

    async def touch(self, user_id: str | uuid.UUID, provider: str) -> None:
        """Record use of the access token; does not bump ``version``."""
        async with session_scope(self._session_factory) as session:
            await session.execute(
                update(UserConnection)
                .where(
                    UserConnection.user_id == to_uuid(user_id),
                    UserConnection.provider == provider,
                )
                .values(last_used_at=self._clock())
                .execution_options(synchronize_session=False)
            )

    # ── Helpers ─────────────────────────────────────────────────────────

    async def _load(
        self,
        session: AsyncSession,
        user_id,
        provider: str,
        *,
        for_update: bool = False,
        populate_existing: bool = False,
    ) -> Optional[UserConnection]:
        stmt = select(UserConnection).where(
            UserConnection.user_id == to_uuid(user_id),
            UserConnection.provider == provider,
        )
        if for_update:
            stmt = stmt.with_for_update()
        if populate_existing:
            stmt = stmt.execution_options(populate_existing=True)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    def _snapshot(self, row: UserConnection) -> OAuthConnection:
        return OAuthConnection(
            connection_id=row.connection_id,
            user_id=row.user_id,
            provider=row.provider,
            status=ConnectionStatus(row.status),
            version=row.version,
            expires_at=as_utc(row.expires_at),
            scopes=frozenset(row.scopes or []),
            account_id=row.account_id or "",
            account_label=row.account_label or "",
            provider_meta=dict(row.provider_meta or {}),
            connected_at=as_utc(row.connected_at),
            last_refreshed=as_utc(row.last_refreshed),
            last_used_at=as_utc(row.last_used_at),
            error_message=row.error_message,
            encrypted_access_token=row.access_token,
            encrypted_refresh_token=row.refresh_token,
            cipher=self._cipher,
        )
