from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from app.models import PaymentTransaction, UserSubscription
from app.services.subscription_service import activate_subscription
from app.workers import tasks_subscriptions
from app.workers.celery_app import celery_app


class _Engine:
    disposed = 0

    async def dispose(self):
        self.disposed += 1


@pytest.fixture
def worker_db(monkeypatch, session_factory):
    engine = _Engine()
    monkeypatch.setattr(tasks_subscriptions, "AsyncSessionLocal", session_factory)
    monkeypatch.setattr(tasks_subscriptions, "engine", engine)
    return engine


def test_beat_schedule_registers_sweeps():
    tasks = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
    assert tasks == {
        "app.workers.tasks_subscriptions.expire_subscriptions",
        "app.workers.tasks_subscriptions.reconcile_stale_transactions",
    }


@pytest.mark.asyncio
async def test_expire_task(worker_db, db, subscription):
    await activate_subscription(db, 42, datetime.utcnow() - timedelta(days=31), 30)
    await db.commit()

    assert await tasks_subscriptions._expire_subscriptions() == 1
    assert worker_db.disposed == 1

    result = await db.execute(
        select(UserSubscription.status).where(UserSubscription.id == 42)
    )
    assert result.scalar_one() == "expired"


@pytest.mark.asyncio
async def test_reconcile_task_uses_recorded_provider(worker_db, monkeypatch, db, subscription, fake_provider):
    db.add(
        PaymentTransaction(
            subscription_id=42,
            user_id=1,
            amount=1000,
            currency="KES",
            payment_method="mpesa",
            payment_provider="fake",
            provider_reference="inv_9",
            status="processing",
            updated_at=datetime.utcnow() - timedelta(hours=2),
        )
    )
    await db.commit()
    requested = []

    def resolve(name):
        requested.append(name)
        return fake_provider

    monkeypatch.setattr(tasks_subscriptions, "get_payment_provider", resolve)

    counts = await tasks_subscriptions._reconcile_stale_transactions()

    assert counts["completed"] == 1
    assert requested == ["fake"]
    assert worker_db.disposed == 1
