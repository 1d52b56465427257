"""
Business-type catalog: read access plus the default seed set.
"""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import BusinessType

DEFAULT_BUSINESS_TYPES: List[dict] = [
    {
        "slug": "hot_tub",
        "name": "Hot Tub & Spa Dealer",
        "description": "Sales, service and parts for hot tubs and spas.",
        "default_categories": [
            {"name": "Sales", "description": "New customer and quote requests"},
            {"name": "Service", "description": "Repairs and maintenance visits"},
            {"name": "Parts", "description": "Parts and chemical orders"},
            {"name": "Warranty", "description": "Warranty claims"},
            {"name": "Urgent", "description": "Leaks, outages, safety issues"},
        ],
    },
    {
        "slug": "pool",
        "name": "Pool Service",
        "description": "Pool cleaning, openings, closings and repairs.",
        "default_categories": [
            {"name": "Service Request", "description": "Cleaning and repair requests"},
            {"name": "Scheduling", "description": "Openings, closings, appointments"},
            {"name": "Billing", "description": "Invoices and payments"},
            {"name": "Urgent", "description": "Equipment failure, water quality"},
        ],
    },
    {
        "slug": "wellness",
        "name": "Wellness Studio",
        "description": "Spas, massage and wellness centres.",
        "default_categories": [
            {"name": "Booking", "description": "Appointments and cancellations"},
            {"name": "Inquiry", "description": "Questions about services"},
            {"name": "Feedback", "description": "Reviews and complaints"},
        ],
    },
    {
        "slug": "other",
        "name": "Other",
        "description": "General small business.",
        "default_categories": [
            {"name": "Inquiry", "description": "General questions"},
            {"name": "Support", "description": "Customer support"},
            {"name": "Billing", "description": "Invoices and payments"},
        ],
    },
]


async def list_business_types(session: AsyncSession) -> List[BusinessType]:
    result = await session.execute(
        select(BusinessType).where(BusinessType.is_active.is_(True)).order_by(BusinessType.name)
    )
    return list(result.scalars().all())


async def get_business_type(session: AsyncSession, business_type_id: int) -> Optional[BusinessType]:
    """Active business type by id, or None."""
    row = await session.get(BusinessType, business_type_id)
    if row is None or not row.is_active:
        return None
    return row


async def get_business_type_by_slug(session: AsyncSession, slug: str) -> Optional[BusinessType]:
    result = await session.execute(
        select(BusinessType).where(BusinessType.slug == slug, BusinessType.is_active.is_(True))
    )
    return result.scalar_one_or_none()
