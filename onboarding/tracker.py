"""
Onboarding state tracker: persisted, resumable wizard progress.

Completion of the ``email-provider`` step is never stored: it is derived
from the token manager's live connection state, so the two can not drift
apart.  Every other step is stored in ``OnboardingProgress``.
"""

from __future__ import annotations

import copy
import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.token_manager import TokenManager
from database.helpers import get_user, to_uuid
from database.models import OnboardingProgress
from database.session import session_scope
from onboarding import steps
from onboarding.business_types import get_business_type
from onboarding.schemas import ProgressSnapshot
from utils.clock import Clock, utcnow
from utils.errors import StepNotSkippable, StepOutOfOrder, UnknownBusinessType, UserNotFound

logger = logging.getLogger(__name__)


class OnboardingTracker:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        connections: TokenManager,
        *,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._connections = connections
        self._clock = clock

    # ── Queries ─────────────────────────────────────────────────────────

    async def get_progress(self, user_id: str | uuid.UUID) -> ProgressSnapshot:
        connected = await self._connections.is_connected(user_id)
        async with session_scope(self._session_factory) as session:
            await self._require_user(session, user_id)
            progress = await session.get(OnboardingProgress, to_uuid(user_id))
            return self._snapshot(user_id, progress, connected)

    async def get_next_step(self, user_id: str | uuid.UUID) -> str:
        return (await self.get_progress(user_id)).next_step

    # ── Commands ────────────────────────────────────────────────────────

    async def record_step_completion(
        self,
        user_id: str | uuid.UUID,
        step_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> ProgressSnapshot:
        """
        Mark ``step_id`` complete and store its payload.

        Idempotent: re-submitting a step overwrites its settings and never
        duplicates the completion marker.
        """
        step = steps.get_step(step_id)
        connected = await self._connections.is_connected(user_id)
        async with session_scope(self._session_factory) as session:
            user = await self._require_user(session, user_id)
            progress = await self._load_for_update(session, user_id)
            self._check_prerequisites(progress, step_id, connected)
            if step.derived and not connected:
                raise StepOutOfOrder(f"'{step_id}' completes once a mailbox is connected")

            settings = dict(progress.settings or {})
            settings[step_id] = dict(payload or {})
            progress.settings = settings
            self._mark_complete(progress, step)

            if step_id == steps.COMPLETE and not user.onboarding_completed:
                user.onboarding_completed = True
                user.onboarding_completed_at = self._clock()
                logger.info("Onboarding completed for user %s", user_id)

            await session.flush()
            logger.info("Recorded onboarding step %s for user %s", step_id, user_id)
            return self._snapshot(user_id, progress, connected)

    async def select_business_type(
        self,
        user_id: str | uuid.UUID,
        business_type_id: int,
        payload: Optional[Dict[str, Any]] = None,
    ) -> ProgressSnapshot:
        """
        Complete ``business-type`` and seed the category list from the
        type's defaults.

        The seed is a copy: later edits to the catalog never reach users who
        already picked the type.  Re-selecting the same type keeps the
        user's edited categories.
        """
        step = steps.get_step(steps.BUSINESS_TYPE)
        connected = await self._connections.is_connected(user_id)
        async with session_scope(self._session_factory) as session:
            await self._require_user(session, user_id)
            business_type = await get_business_type(session, business_type_id)
            if business_type is None:
                raise UnknownBusinessType(f"Business type {business_type_id} does not exist or is inactive")

            progress = await self._load_for_update(session, user_id)
            self._check_prerequisites(progress, steps.BUSINESS_TYPE, connected)

            settings = dict(progress.settings or {})
            step_settings = dict(payload or {})
            step_settings["business_type_id"] = business_type.id
            step_settings["business_type_slug"] = business_type.slug
            settings[steps.BUSINESS_TYPE] = step_settings
            if progress.business_type_id != business_type.id or "categories" not in settings:
                settings["categories"] = copy.deepcopy(list(business_type.default_categories or []))
            progress.settings = settings
            progress.business_type_id = business_type.id
            self._mark_complete(progress, step)

            await session.flush()
            logger.info("User %s selected business type %s", user_id, business_type.slug)
            return self._snapshot(user_id, progress, connected)

    async def skip_step(self, user_id: str | uuid.UUID, step_id: str) -> ProgressSnapshot:
        """Defer a skippable step. Idempotent; a completed step stays complete."""
        step = steps.get_step(step_id)
        if not step.skippable:
            raise StepNotSkippable(f"'{step_id}' cannot be skipped")
        connected = await self._connections.is_connected(user_id)
        async with session_scope(self._session_factory) as session:
            await self._require_user(session, user_id)
            progress = await self._load_for_update(session, user_id)
            completed = self._completed(progress, connected)
            blocker = steps.blocking_step(
                step_id, completed, progress.skipped_steps or [], honour_skips=True
            )
            if blocker:
                raise StepOutOfOrder(f"Complete '{blocker}' before skipping '{step_id}'")
            if step_id not in completed and step_id not in (progress.skipped_steps or []):
                progress.skipped_steps = list(progress.skipped_steps or []) + [step_id]
                progress.updated_at = self._clock()
                await session.flush()
                logger.info("User %s skipped onboarding step %s", user_id, step_id)
            return self._snapshot(user_id, progress, connected)

    async def update_categories(
        self,
        user_id: str | uuid.UUID,
        categories: List[Dict[str, Any]],
    ) -> ProgressSnapshot:
        connected = await self._connections.is_connected(user_id)
        async with session_scope(self._session_factory) as session:
            await self._require_user(session, user_id)
            progress = await self._load_for_update(session, user_id)
            if steps.BUSINESS_TYPE not in (progress.completed_steps or []):
                raise StepOutOfOrder("Choose a business type before editing categories")
            settings = dict(progress.settings or {})
            settings["categories"] = [dict(c) for c in categories]
            progress.settings = settings
            progress.updated_at = self._clock()
            await session.flush()
            return self._snapshot(user_id, progress, connected)

    async def note_provider_connected(self, user_id: str | uuid.UUID, provider: str) -> ProgressSnapshot:
        """Record which mailbox was connected and drop a pending skip of the step."""
        connected = await self._connections.is_connected(user_id)
        async with session_scope(self._session_factory) as session:
            await self._require_user(session, user_id)
            progress = await self._load_for_update(session, user_id)
            settings = dict(progress.settings or {})
            settings[steps.EMAIL_PROVIDER] = {
                **dict(settings.get(steps.EMAIL_PROVIDER) or {}),
                "provider": provider,
                "connected_at": self._clock().isoformat(),
            }
            progress.settings = settings
            progress.skipped_steps = [s for s in (progress.skipped_steps or []) if s != steps.EMAIL_PROVIDER]
            progress.updated_at = self._clock()
            await session.flush()
            return self._snapshot(user_id, progress, connected)

    # ── Helpers ─────────────────────────────────────────────────────────

    async def _require_user(self, session: AsyncSession, user_id):
        user = await get_user(session, user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found")
        return user

    async def _load_for_update(self, session: AsyncSession, user_id) -> OnboardingProgress:
        result = await session.execute(
            select(OnboardingProgress)
            .where(OnboardingProgress.user_id == to_uuid(user_id))
            .with_for_update()
        )
        progress = result.scalar_one_or_none()
        if progress is None:
            now = self._clock()
            progress = OnboardingProgress(
                user_id=to_uuid(user_id),
                completed_steps=[],
                skipped_steps=[],
                settings={},
                created_at=now,
                updated_at=now,
            )
            session.add(progress)
        return progress

    def _check_prerequisites(self, progress: OnboardingProgress, step_id: str, connected: bool) -> None:
        blocker = steps.blocking_step(
            step_id, self._completed(progress, connected), progress.skipped_steps or []
        )
        if blocker:
            raise StepOutOfOrder(f"Complete '{blocker}' before '{step_id}'")

    def _mark_complete(self, progress: OnboardingProgress, step: steps.StepDefinition) -> None:
        stored = list(progress.completed_steps or [])
        if not step.derived and step.step_id not in stored:
            stored.append(step.step_id)
        progress.completed_steps = stored
        progress.skipped_steps = [s for s in (progress.skipped_steps or []) if s != step.step_id]
        progress.updated_at = self._clock()

    @staticmethod
    def _completed(progress: Optional[OnboardingProgress], connected: bool) -> List[str]:
        """Stored completions plus the derived email-provider step, in canonical order."""
        stored = set(progress.completed_steps or []) if progress is not None else set()
        return [
            s for s in steps.STEP_ORDER
            if (s == steps.EMAIL_PROVIDER and connected)
            or (s != steps.EMAIL_PROVIDER and s in stored)
        ]

    def _snapshot(self, user_id, progress: Optional[OnboardingProgress], connected: bool) -> ProgressSnapshot:
        completed = self._completed(progress, connected)
        skipped = [
            s for s in (progress.skipped_steps or [] if progress is not None else [])
            if s not in completed
        ]
        return ProgressSnapshot(
            user_id=str(user_id),
            completed_steps=completed,
            skipped_steps=skipped,
            business_type_id=progress.business_type_id if progress is not None else None,
            settings=copy.deepcopy(dict(progress.settings or {})) if progress is not None else {},
            email_provider_connected=connected,
            next_step=steps.next_step(completed, skipped),
        )
