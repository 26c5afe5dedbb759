"""Read-only lookups against agencies and their subscription plans."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError
from app.models import Agency, SubscriptionPlan


async def get_agency(db: AsyncSession, agency_id: int) -> Agency:
    result = await db.execute(select(Agency).where(Agency.id == agency_id))
    agency = result.scalar_one_or_none()
    if agency is None:
        raise NotFoundError("Agency not found", {"agency_id": agency_id})
    return agency


async def get_plan(db: AsyncSession, plan_id: int) -> SubscriptionPlan:
    result = await db.execute(select(SubscriptionPlan).where(SubscriptionPlan.id == plan_id))
    plan = result.scalar_one_or_none()
    if plan is None:
        raise NotFoundError("Subscription plan not found", {"plan_id": plan_id})
    return plan
