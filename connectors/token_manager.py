"""
Token manager — authorize / get / refresh / revoke per-user OAuth tokens.

This is the single interface the rest of the application uses to obtain a
usable access token for a user + provider combination.

Lifecycle per pair::

    none → pending_auth → active ⇄ (refresh) → expired → revoked

``expired`` is observed lazily at read time; nothing has to sweep for
correctness.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Awaitable, Dict, List, Optional, Tuple, TypeVar

from config.settings import Settings
from connectors.credential_store import CredentialStore
from connectors.registry import ConnectorRegistry
from connectors.schemas import AuthorizationRequest, ConnectionStatus, MailboxLabel, OAuthConnection
from connectors.state_store import OAuthStateStore
from utils.clock import Clock, utcnow
from utils.errors import (
    AppError,
    InvalidState,
    ProviderExchangeFailed,
    ReauthorizationRequired,
    StoreUnavailable,
    TokenRejected,
    UnknownProvider,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TokenManager:
    def __init__(
        self,
        store: CredentialStore,
        states: OAuthStateStore,
        registry: ConnectorRegistry,
        settings: Settings,
        *,
        clock: Clock = utcnow,
    ):
        self._store = store
        self._states = states
        self._registry = registry
        self._margin = settings.token_refresh_margin_seconds
        self._timeout = settings.oauth_timeout_seconds
        self._clock = clock
        self._refreshes: Dict[Tuple[str, str], asyncio.Task] = {}

    # ── Authorization ───────────────────────────────────────────────────

    async def begin_authorization(self, user_id: str | uuid.UUID, provider: str) -> AuthorizationRequest:
        """Issue a single-use state and build the provider consent URL."""
        connector = self._registry.require(provider)
        state = await self._states.issue(user_id, provider)
        logger.info("OAuth authorization started: user=%s provider=%s", user_id, provider)
        return AuthorizationRequest(
            provider=provider,
            authorization_url=connector.get_auth_url(state),
            state=state,
        )

    async def complete_authorization(
        self,
        code: str | None,
        state: str | None,
        *,
        expected_provider: Optional[str] = None,
    ) -> OAuthConnection:
        """
        Validate ``state``, exchange ``code`` and persist the connection.

        The state is consumed before the exchange so a replayed redirect can
        never spend the code twice.  Nothing is written unless the exchange
        succeeds.
        """
        user_id, provider = await self._states.consume(state)
        if expected_provider is not None and expected_provider != provider:
            raise InvalidState("OAuth state was issued for a different provider")
        connector = self._registry.get(provider)
        if connector is None:
            raise UnknownProvider(f"Provider '{provider}' is no longer configured")
        if not code:
            raise ProviderExchangeFailed("Authorization code missing from callback")

        bundle = await self._call_provider(connector.handle_callback(code), f"{provider} code exchange")
        conn = await self._store.upsert_connection(user_id, provider, bundle)
        logger.info(
            "OAuth connected: user=%s provider=%s account=%s",
            user_id, provider, conn.account_label or "-",
        )
        return conn

    # ── Access tokens ───────────────────────────────────────────────────

    async def get_valid_access_token(self, user_id: str | uuid.UUID, provider: str) -> str:
        """
        Return a usable access token, refreshing it first when it is inside
        the safety margin.

        Raises ``ReauthorizationRequired`` when the pair is not connected or
        the credential cannot be refreshed.  A transient provider failure
        during an early refresh falls back to the current token; once that
        token has actually expired it raises ``ProviderExchangeFailed``.
        """
        conn = await self._store.get_active_connection(user_id, provider)
        if conn is None:
            raise ReauthorizationRequired(f"No active {provider} connection")

        if not conn.is_fresh(self._clock(), self._margin):
            try:
                conn = await self._refresh(conn, self._margin)
            except ProviderExchangeFailed:
                # Early refresh failed; the stored token is still good until expiry
                if conn.expires_at is None or self._clock() >= conn.expires_at:
                    raise
                logger.warning(
                    "Refresh of %s token for user %s failed; using current token until %s",
                    provider, user_id, conn.expires_at.isoformat(),
                )

        await self._store.touch(user_id, provider)
        return conn.access_token()

    async def list_labels(self, user_id: str | uuid.UUID, provider: str) -> List[MailboxLabel]:
        """Labels / folders of the connected mailbox, fetched with a live access token."""
        connector = self._registry.require(provider)
        access_token = await self.get_valid_access_token(user_id, provider)
        return await self._call_provider(connector.list_labels(access_token), f"{provider} label listing")

    async def _refresh(self, conn: OAuthConnection, margin: int) -> OAuthConnection:
        """
        Single-flight refresh per pair.

        Concurrent callers share one task; the task is shielded so a caller
        that goes away does not cancel a refresh that is about to commit.
        """
        key = (str(conn.user_id), conn.provider)
        task = self._refreshes.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh_and_store(conn.user_id, conn.provider, margin))
            self._refreshes[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return await asyncio.shield(task)

    def _forget(self, key: Tuple[str, str], task: asyncio.Task) -> None:
        if self._refreshes.get(key) is task:
            del self._refreshes[key]
        if not task.cancelled():
            task.exception()  # mark retrieved when every waiter went away

    async def _refresh_and_store(self, user_id: uuid.UUID, provider: str, margin: int) -> OAuthConnection:
        current = await self._store.get_active_connection(user_id, provider)
        if current is None:
            raise ReauthorizationRequired(f"{provider} connection is no longer active")

        now = self._clock()
        if current.is_fresh(now, margin):
            return current  # refreshed elsewhere since the caller looked

        refresh_token = current.refresh_token()
        if not refresh_token:
            if current.expires_at is not None and now >= current.expires_at:
                await self._store.mark_expired(
                    user_id, provider, current.version, "Token expired and no refresh token available"
                )
                raise ReauthorizationRequired(f"{provider} token expired and cannot be refreshed")
            return current  # still valid, nothing to refresh with

        connector = self._registry.get(provider)
        if connector is None:
            raise UnknownProvider(f"Provider '{provider}' is no longer configured")

        try:
            bundle = await self._call_provider(
                connector.refresh_access_token(refresh_token), f"{provider} token refresh"
            )
        except TokenRejected as exc:
            await self._store.mark_expired(user_id, provider, current.version, f"Refresh rejected: {exc.message}")
            raise ReauthorizationRequired(f"{provider} rejected the refresh token") from exc

        updated = await self._store.commit_refresh(user_id, provider, current.version, bundle)
        if updated is not None:
            logger.info("Refreshed %s token for user %s", provider, user_id)
            return updated

        # Lost the compare-and-swap: a revoke, re-authorisation or another
        # process's refresh committed first.  Whatever is stored now wins.
        latest = await self._store.get_active_connection(user_id, provider)
        if latest is None:
            raise ReauthorizationRequired(f"{provider} connection was revoked during refresh")
        if latest.expires_at is None or self._clock() < latest.expires_at:
            return latest
        raise ProviderExchangeFailed(f"{provider} token refresh raced another writer")

    async def refresh_expiring(self, within: timedelta) -> int:
        """
        Proactively refresh tokens expiring within ``within``.

        Optional hygiene job; failures are logged and left to the lazy path.
        Returns the number of connections refreshed.
        """
        candidates = await self._store.list_expiring(self._clock() + within)
        refreshed = 0
        for conn in candidates:
            try:
                await self._refresh(conn, int(within.total_seconds()))
                refreshed += 1
            except (ReauthorizationRequired, ProviderExchangeFailed, StoreUnavailable, UnknownProvider) as exc:
                logger.warning(
                    "Background refresh failed for %s/%s: %s", conn.provider, conn.user_id, exc.code
                )
        return refreshed

    # ── Disconnect ──────────────────────────────────────────────────────

    async def disconnect(self, user_id: str | uuid.UUID, provider: str) -> None:
        """
        Best-effort provider revocation, then local revocation.

        The local write always happens, so the user is never left
        "connected" because the provider was unreachable.
        """
        conn = await self._store.get_active_connection(user_id, provider)
        connector = self._registry.get(provider)
        if conn is not None and connector is not None:
            try:
                token = conn.refresh_token() or conn.access_token()
                revoked = await self._call_provider(connector.revoke_token(token), f"{provider} revocation")
                if not revoked:
                    logger.info("Provider %s did not confirm revocation for user %s", provider, user_id)
            except Exception as exc:
                logger.warning("Token revocation at %s failed for user %s: %s", provider, user_id, exc)

        await self._store.mark_revoked(user_id, provider)
        logger.info("Disconnected %s for user %s", provider, user_id)

    # ── Status (read-only) ──────────────────────────────────────────────

    async def connection_status(self, user_id: str | uuid.UUID, provider: str) -> ConnectionStatus:
        conn = await self._store.get_connection(user_id, provider)
        if conn is None or conn.status is ConnectionStatus.REVOKED:
            if await self._states.has_pending(user_id, provider):
                return ConnectionStatus.PENDING_AUTH
            return ConnectionStatus.REVOKED if conn is not None else ConnectionStatus.NONE
        return self._effective_status(conn)

    async def connected_providers(self, user_id: str | uuid.UUID) -> List[str]:
        """Providers with a usable (ACTIVE, not lazily expired) connection."""
        return [
            conn.provider
            for conn in await self._store.list_connections(user_id)
            if self._effective_status(conn) is ConnectionStatus.ACTIVE
        ]

    async def is_connected(self, user_id: str | uuid.UUID, provider: Optional[str] = None) -> bool:
        providers = await self.connected_providers(user_id)
        return bool(providers) if provider is None else provider in providers

    async def list_connections(self, user_id: str | uuid.UUID) -> List[dict]:
        """All connections for a user (no tokens exposed)."""
        result = []
        for conn in await self._store.list_connections(user_id):
            item = conn.to_public_dict()
            item["status"] = self._effective_status(conn).value
            result.append(item)
        return result

    def _effective_status(self, conn: OAuthConnection) -> ConnectionStatus:
        if (
            conn.status is ConnectionStatus.ACTIVE
            and not conn.has_refresh_token
            and conn.expires_at is not None
            and self._clock() >= conn.expires_at
        ):
            return ConnectionStatus.EXPIRED
        return conn.status

    # ── Helpers ─────────────────────────────────────────────────────────

    async def _call_provider(self, awaitable: Awaitable[T], what: str) -> T:
        """Bound a provider round-trip; a timeout counts as a failure."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("%s timed out after %.1fs", what, self._timeout)
            raise ProviderExchangeFailed(f"{what} timed out") from exc
        except AppError:
            raise
        except Exception as exc:
            logger.error("%s failed: %s", what, exc.__class__.__name__)
            raise ProviderExchangeFailed(f"{what} failed") from exc
