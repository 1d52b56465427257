"""
Onboarding service: facade over the token manager and the tracker.

Queries (``get_onboarding_status``) never write; every command returns the
freshly re-derived status so the UI never has to guess the next step.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import Settings
from connectors.schemas import AuthorizationRequest, MailboxLabel
from connectors.token_manager import TokenManager
from database.helpers import get_user
from database.session import session_scope
from onboarding import steps
from onboarding.schemas import (
    BusinessTypePayload,
    CategoriesUpdate,
    OnboardingStatus,
    ProgressSnapshot,
    parse_step_payload,
)
from onboarding.tracker import OnboardingTracker
from utils.errors import ReauthorizationRequired, UserNotFound
from utils.retry import retry_async

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OnboardingService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tokens: TokenManager,
        tracker: OnboardingTracker,
        settings: Settings,
    ):
        self._session_factory = session_factory
        self.tokens = tokens
        self.tracker = tracker
        self._max_retries = settings.default_max_retries
        self._retry_delay = settings.default_retry_delay
        self._backoff = settings.default_backoff_multiplier

    # ── Queries ─────────────────────────────────────────────────────────

    async def get_onboarding_status(self, user_id: str | uuid.UUID) -> OnboardingStatus:
        snapshot = await self._retry(lambda: self.tracker.get_progress(user_id), "onboarding status")
        return await self._status(user_id, snapshot)

    # ── Step commands ───────────────────────────────────────────────────

    async def complete_step(
        self,
        user_id: str | uuid.UUID,
        step_id: str,
        raw_payload: Optional[Dict[str, Any]] = None,
    ) -> OnboardingStatus:
        """Validate the step payload, apply it and return the fresh status."""
        payload = parse_step_payload(step_id, raw_payload)

        if isinstance(payload, BusinessTypePayload):
            extra = payload.model_dump(mode="json", exclude={"business_type_id"}, exclude_none=True)
            snapshot = await self._retry(
                lambda: self.tracker.select_business_type(user_id, payload.business_type_id, extra),
                f"step {step_id}",
            )
        else:
            data = payload.model_dump(mode="json")
            snapshot = await self._retry(
                lambda: self.tracker.record_step_completion(user_id, step_id, data),
                f"step {step_id}",
            )
        return await self._status(user_id, snapshot)

    async def skip_step(self, user_id: str | uuid.UUID, step_id: str) -> OnboardingStatus:
        snapshot = await self._retry(lambda: self.tracker.skip_step(user_id, step_id), f"skip {step_id}")
        return await self._status(user_id, snapshot)

    async def update_categories(self, user_id: str | uuid.UUID, update: CategoriesUpdate) -> OnboardingStatus:
        categories = [c.model_dump(mode="json", exclude_none=True) for c in update.categories]
        snapshot = await self._retry(
            lambda: self.tracker.update_categories(user_id, categories), "update categories"
        )
        return await self._status(user_id, snapshot)

    # ── Mailbox connection ──────────────────────────────────────────────

    async def begin_provider_connection(self, user_id: str | uuid.UUID, provider: str) -> AuthorizationRequest:
        return await self.tokens.begin_authorization(user_id, provider)

    async def complete_provider_connection(
        self,
        code: Optional[str],
        state: Optional[str],
        provider: Optional[str] = None,
    ) -> Tuple[uuid.UUID, OnboardingStatus]:
        """
        Finish the OAuth callback and reflect it in onboarding progress.

        Not retried: the state and the code are single-use.
        """
        conn = await self.tokens.complete_authorization(code, state, expected_provider=provider)
        snapshot = await self._retry(
            lambda: self.tracker.note_provider_connected(conn.user_id, conn.provider),
            "record provider connection",
        )
        return conn.user_id, await self._status(conn.user_id, snapshot)

    async def disconnect_provider(self, user_id: str | uuid.UUID, provider: str) -> OnboardingStatus:
        await self.tokens.disconnect(user_id, provider)
        return await self.get_onboarding_status(user_id)

    async def list_mailbox_labels(
        self,
        user_id: str | uuid.UUID,
        provider: Optional[str] = None,
    ) -> Tuple[str, List[MailboxLabel]]:
        """
        Labels of the connected mailbox, for the label-mapping step.

        Without ``provider`` the first connected mailbox is used.  Raises
        ``ReauthorizationRequired`` when there is none or its credential is
        dead.
        """
        if provider is None:
            providers = await self.tokens.connected_providers(user_id)
            if not providers:
                raise ReauthorizationRequired("No mailbox is connected")
            provider = providers[0]
        return provider, await self.tokens.list_labels(user_id, provider)

    # ── Helpers ─────────────────────────────────────────────────────────

    async def _status(self, user_id, snapshot: ProgressSnapshot) -> OnboardingStatus:
        providers: List[str] = await self.tokens.connected_providers(user_id)
        async with session_scope(self._session_factory) as session:
            user = await get_user(session, user_id)
            if user is None:
                raise UserNotFound(f"User {user_id} not found")
            completed_flag = bool(user.onboarding_completed)
        return OnboardingStatus(
            next_step=snapshot.next_step,
            completed_steps=snapshot.completed_steps,
            skipped_steps=snapshot.skipped_steps,
            business_type_id=snapshot.business_type_id,
            email_provider_connected=snapshot.email_provider_connected,
            connected_providers=providers,
            settings=snapshot.settings,
            onboarding_completed=completed_flag or steps.COMPLETE in snapshot.completed_steps,
        )

    async def _retry(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        return await retry_async(
            operation,
            max_retries=self._max_retries,
            base_delay=self._retry_delay,
            backoff_multiplier=self._backoff,
            label=label,
        )
