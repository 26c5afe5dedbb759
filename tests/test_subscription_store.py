from datetime import date, datetime, timedelta

import pytest

from app.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from app.services.plan_catalog import get_agency, get_plan
from app.services.subscription_service import (
    activate_subscription,
    build_subscription_draft,
    cancel_subscription,
    create_subscription,
    expire_due_subscriptions,
    get_subscription,
    mark_subscription_failed,
)


@pytest.mark.asyncio
async def test_create_subscription_from_custom_draft(db, seeded):
    today = date.today()
    agency = await get_agency(db, 1)
    plan = await get_plan(db, 2)
    draft = build_subscription_draft(
        1, agency, plan, selection=[today + timedelta(days=3), today + timedelta(days=10)]
    )

    sub = await create_subscription(db, draft, metadata={"source": "app"}, auto_renew=True)
    await db.commit()

    assert sub.id is not None
    assert sub.status == "pending"
    assert sub.payment_status == "pending"
    assert sub.start_date is None and sub.end_date is None
    assert sub.custom_collection_dates == [
        (today + timedelta(days=3)).isoformat(),
        (today + timedelta(days=10)).isoformat(),
    ]
    assert sub.metadata_json == {"source": "app", "plan_type": "custom"}
    assert sub.auto_renew


@pytest.mark.asyncio
async def test_catalog_lookups_raise_not_found(db, seeded):
    with pytest.raises(NotFoundError):
        await get_agency(db, 404)
    with pytest.raises(NotFoundError):
        await get_plan(db, 404)
    with pytest.raises(NotFoundError):
        await get_subscription(db, 404)


@pytest.mark.asyncio
async def test_activation_sets_dates_once(db, subscription):
    start = datetime(2026, 3, 2, 8, 0)

    sub = await activate_subscription(db, 42, start, 30)
    await db.commit()

    assert sub.status == "active"
    assert sub.payment_status == "completed"
    assert sub.start_date == start
    assert sub.end_date == datetime(2026, 4, 1, 8, 0)

    again = await activate_subscription(db, 42, datetime(2026, 3, 9), 30)
    assert again.start_date == start
    assert again.end_date == datetime(2026, 4, 1, 8, 0)


@pytest.mark.asyncio
async def test_mark_failed_does_not_touch_active_subscription(db, subscription):
    failed = await mark_subscription_failed(db, 42)
    assert failed.status == "pending"
    assert failed.payment_status == "failed"

    await activate_subscription(db, 42, datetime(2026, 3, 2), 30)
    still_active = await mark_subscription_failed(db, 42)
    assert still_active.status == "active"
    assert still_active.payment_status == "completed"


@pytest.mark.asyncio
async def test_cancel_subscription(db, subscription):
    with pytest.raises(AuthorizationError):
        await cancel_subscription(db, 42, user_id=2)

    cancelled = await cancel_subscription(db, 42, user_id=1)
    assert cancelled.status == "cancelled"
    assert not cancelled.auto_renew

    assert (await cancel_subscription(db, 42, user_id=1)).status == "cancelled"


@pytest.mark.asyncio
async def test_expired_subscription_cannot_be_cancelled(db, subscription):
    await activate_subscription(db, 42, datetime.utcnow() - timedelta(days=40), 30)
    await db.commit()

    assert await expire_due_subscriptions(db) == 1
    await db.commit()

    sub = await get_subscription(db, 42, for_update=True)
    assert sub.status == "expired"
    with pytest.raises(ValidationError):
        await cancel_subscription(db, 42, user_id=1)


@pytest.mark.asyncio
async def test_expiry_leaves_current_subscriptions_alone(db, subscription):
    await activate_subscription(db, 42, datetime.utcnow(), 30)
    await db.commit()

    assert await expire_due_subscriptions(db) == 0
