"""
Onboarding API routes: wizard status, mailbox labels, step completion,
skipping, category edits and the business-type catalog.

Route prefixes: /onboarding, /business-types
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import db_session, get_onboarding_service
from auth.dependencies import get_current_user_id
from onboarding.business_types import get_business_type_by_slug, list_business_types
from onboarding.schemas import BusinessTypeOut, CategoriesUpdate, OnboardingStatus
from onboarding.service import OnboardingService
from utils.errors import UnknownBusinessType

logger = logging.getLogger(__name__)

router = APIRouter(tags=["onboarding"])
business_types_router = APIRouter(tags=["business-types"])


def _envelope(status: OnboardingStatus) -> Dict[str, Any]:
    return {"success": True, "data": status.model_dump(mode="json")}


# ── Onboarding ─────────────────────────────────────────────────────────


@router.get("/status")
async def get_status(
    user_id: str = Depends(get_current_user_id),
    service: OnboardingService = Depends(get_onboarding_service),
) -> Dict[str, Any]:
    """Current progress and the step the UI should render next."""
    return _envelope(await service.get_onboarding_status(user_id))


@router.get("/labels")
async def get_mailbox_labels(
    provider: Optional[str] = Query(default=None),
    user_id: str = Depends(get_current_user_id),
    service: OnboardingService = Depends(get_onboarding_service),
) -> Dict[str, Any]:
    """Labels / folders of the connected mailbox to map categories onto."""
    provider, labels = await service.list_mailbox_labels(user_id, provider)
    return {
        "success": True,
        "data": {"provider": provider, "labels": [label.model_dump() for label in labels]},
    }


@router.put("/categories")
async def update_categories(
    update: CategoriesUpdate,
    user_id: str = Depends(get_current_user_id),
    service: OnboardingService = Depends(get_onboarding_service),
) -> Dict[str, Any]:
    return _envelope(await service.update_categories(user_id, update))


@router.post("/{step_id}/skip")
async def skip_step(
    step_id: str,
    user_id: str = Depends(get_current_user_id),
    service: OnboardingService = Depends(get_onboarding_service),
) -> Dict[str, Any]:
    return _envelope(await service.skip_step(user_id, step_id))


@router.post("/{step_id}")
async def complete_step(
    step_id: str,
    payload: Optional[Dict[str, Any]] = Body(default=None),
    user_id: str = Depends(get_current_user_id),
    service: OnboardingService = Depends(get_onboarding_service),
) -> Dict[str, Any]:
    """
    Submit a step.  The body is validated against the step's own schema;
    the response carries the re-derived status.
    """
    return _envelope(await service.complete_step(user_id, step_id, payload))


# ── Business types ─────────────────────────────────────────────────────


@business_types_router.get("")
async def get_business_types(
    session: AsyncSession = Depends(db_session),
) -> List[Dict[str, Any]]:
    rows = await list_business_types(session)
    return [BusinessTypeOut.model_validate(row).model_dump(mode="json") for row in rows]


@business_types_router.get("/{slug}")
async def get_business_type(
    slug: str,
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    row = await get_business_type_by_slug(session, slug)
    if row is None:
        raise UnknownBusinessType(f"Business type '{slug}' not found")
    return BusinessTypeOut.model_validate(row).model_dump(mode="json")
