"""Subscription request building and lifecycle transitions."""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AuthorizationError, NotFoundError, PersistenceError, ValidationError
from app.models import (
    Agency,
    PaymentStatus,
    PlanType,
    SubscriptionPlan,
    SubscriptionStatus,
    UserSubscription,
)

logger = logging.getLogger(__name__)

CUSTOM_DATE_COUNT = 2
CUSTOM_DATE_WINDOW_DAYS = 30
DEFAULT_COLLECTION_DAYS = ["Monday", "Thursday"]


@dataclass(frozen=True)
class SubscriptionDraft:
    user_id: int
    agency_id: int
    plan_id: int
    plan_type: str
    amount: Decimal
    currency: str
    duration_days: int
    payment_method: str
    collection_days: List[str]
    custom_collection_dates: List[date] = field(default_factory=list)
    status: str = SubscriptionStatus.PENDING


def _parse_dates(selection: Iterable[Any]) -> List[date]:
    parsed: List[date] = []
    for item in selection:
        if isinstance(item, datetime):
            parsed.append(item.date())
        elif isinstance(item, date):
            parsed.append(item)
        elif isinstance(item, str):
            try:
                parsed.append(date.fromisoformat(item.strip()))
            except ValueError:
                raise ValidationError(f"Invalid collection date: {item!r}")
        else:
            raise ValidationError(f"Invalid collection date: {item!r}")
    return parsed


def validate_custom_dates(selection: Optional[Iterable[Any]], today: date) -> List[date]:
    """Exactly two distinct dates, each within [today, today + 30 days]."""
    dates = _parse_dates(selection or [])
    if len(dates) != CUSTOM_DATE_COUNT:
        raise ValidationError(
            f"Select exactly {CUSTOM_DATE_COUNT} collection dates",
            {"selected": len(dates)},
        )
    if len(set(dates)) != CUSTOM_DATE_COUNT:
        raise ValidationError("Collection dates must be distinct")

    latest = today + timedelta(days=CUSTOM_DATE_WINDOW_DAYS)
    for selected in dates:
        if selected < today or selected > latest:
            raise ValidationError(
                f"Collection date {selected.isoformat()} must be between "
                f"{today.isoformat()} and {latest.isoformat()}"
            )
    return sorted(dates)


def build_subscription_draft(
    user_id: int,
    agency: Agency,
    plan: SubscriptionPlan,
    selection: Optional[Iterable[Any]] = None,
    payment_method: str = "mpesa",
    today: Optional[date] = None,
) -> SubscriptionDraft:
    """Validate a plan choice and collection-date selection. No side effects."""
    if not plan.is_active:
        raise ValidationError("Subscription plan is not available")
    if plan.agency_id != agency.id:
        raise ValidationError("Plan does not belong to this agency")

    custom_dates: List[date] = []
    if plan.plan_type == PlanType.CUSTOM:
        custom_dates = validate_custom_dates(selection, today or date.today())
        collection_days = [d.strftime("%A") for d in custom_dates]
    else:
        collection_days = list(agency.collection_days or DEFAULT_COLLECTION_DAYS)

    return SubscriptionDraft(
        user_id=user_id,
        agency_id=agency.id,
        plan_id=plan.id,
        plan_type=plan.plan_type,
        amount=Decimal(str(plan.price)),
        currency=plan.currency,
        duration_days=plan.duration_days,
        payment_method=payment_method,
        collection_days=collection_days,
        custom_collection_dates=custom_dates,
    )


async def create_subscription(
    db: AsyncSession,
    draft: SubscriptionDraft,
    metadata: Optional[Dict[str, Any]] = None,
    auto_renew: bool = False,
) -> UserSubscription:
    subscription = UserSubscription(
        user_id=draft.user_id,
        agency_id=draft.agency_id,
        plan_id=draft.plan_id,
        status=SubscriptionStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        payment_method=draft.payment_method,
        amount=draft.amount,
        currency=draft.currency,
        custom_collection_dates=[d.isoformat() for d in draft.custom_collection_dates] or None,
        collection_days=draft.collection_days,
        auto_renew=auto_renew,
        metadata_json={**(metadata or {}), "plan_type": draft.plan_type},
    )
    db.add(subscription)
    try:
        await db.flush()
    except SQLAlchemyError as exc:
        logger.exception("Failed to create subscription for user %s", draft.user_id)
        raise PersistenceError("Could not save subscription") from exc
    await db.refresh(subscription)
    logger.info("Created pending subscription %s (user=%s plan=%s)", subscription.id, draft.user_id, draft.plan_id)
    return subscription


async def get_subscription(
    db: AsyncSession,
    subscription_id: int,
    for_update: bool = False,
) -> UserSubscription:
    stmt = select(UserSubscription).where(UserSubscription.id == subscription_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    subscription = result.scalar_one_or_none()
    if subscription is None:
        raise NotFoundError("Subscription not found", {"subscription_id": subscription_id})
    return subscription


async def activate_subscription(
    db: AsyncSession,
    subscription_id: int,
    start_date: datetime,
    duration_days: int,
) -> UserSubscription:
    """Activate after a confirmed payment. Already-active subscriptions are left as they are."""
    subscription = await get_subscription(db, subscription_id, for_update=True)
    if subscription.status == SubscriptionStatus.ACTIVE:
        logger.info("Subscription %s already active; skipping activation", subscription_id)
        return subscription
    if subscription.status != SubscriptionStatus.PENDING:
        # Money was captured, so the payment wins over the earlier status.
        logger.warning(
            "Activating subscription %s from status %s after confirmed payment",
            subscription_id,
            subscription.status,
        )

    subscription.status = SubscriptionStatus.ACTIVE
    subscription.payment_status = PaymentStatus.COMPLETED
    subscription.start_date = start_date
    subscription.end_date = start_date + timedelta(days=duration_days)
    subscription.updated_at = datetime.utcnow()
    await db.flush()
    logger.info("Subscription %s active until %s", subscription_id, subscription.end_date)
    return subscription


async def mark_subscription_processing(db: AsyncSession, subscription_id: int) -> UserSubscription:
    subscription = await get_subscription(db, subscription_id, for_update=True)
    if subscription.status == SubscriptionStatus.PENDING and subscription.payment_status != PaymentStatus.COMPLETED:
        subscription.payment_status = PaymentStatus.PROCESSING
        subscription.updated_at = datetime.utcnow()
        await db.flush()
    return subscription


async def mark_subscription_failed(db: AsyncSession, subscription_id: int) -> UserSubscription:
    """Record a failed payment; status stays pending so the user can retry."""
    subscription = await get_subscription(db, subscription_id, for_update=True)
    if subscription.payment_status == PaymentStatus.COMPLETED:
        return subscription
    subscription.payment_status = PaymentStatus.FAILED
    subscription.updated_at = datetime.utcnow()
    await db.flush()
    return subscription


async def cancel_subscription(db: AsyncSession, subscription_id: int, user_id: int) -> UserSubscription:
    subscription = await get_subscription(db, subscription_id, for_update=True)
    if subscription.user_id != user_id:
        raise AuthorizationError("Subscription does not belong to the current user")
    if subscription.status == SubscriptionStatus.CANCELLED:
        return subscription
    if subscription.status == SubscriptionStatus.EXPIRED:
        raise ValidationError("Subscription has already expired")

    subscription.status = SubscriptionStatus.CANCELLED
    subscription.auto_renew = False
    subscription.updated_at = datetime.utcnow()
    await db.flush()
    logger.info("Subscription %s cancelled by user %s", subscription_id, user_id)
    return subscription


async def expire_due_subscriptions(db: AsyncSession, now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    result = await db.execute(
        update(UserSubscription)
        .where(
            UserSubscription.status == SubscriptionStatus.ACTIVE,
            UserSubscription.end_date < now,
        )
        .values(status=SubscriptionStatus.EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    expired = result.rowcount or 0
    if expired:
        logger.info("Expired %s subscriptions", expired)
    return expired
