"""Periodic subscription and payment maintenance tasks."""

import asyncio
import logging
from typing import Dict

from celery import Task

from app.database import AsyncSessionLocal, engine
from app.services.payment_service import get_payment_provider
from app.services.payment_verifier import reconcile_stale_transactions as _reconcile
from app.services.subscription_service import expire_due_subscriptions
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


class BaseSweepTask(Task):
    autoretry_for = (ConnectionError, TimeoutError)
    retry_backoff = True
    retry_backoff_max = 300
    retry_jitter = True
    max_retries = 3


async def _expire_subscriptions() -> int:
    try:
        async with AsyncSessionLocal() as db:
            expired = await expire_due_subscriptions(db)
            await db.commit()
            return expired
    finally:
        # each asyncio.run gets a fresh loop; pooled connections can't cross it
        await engine.dispose()


async def _reconcile_stale_transactions() -> Dict[str, int]:
    try:
        async with AsyncSessionLocal() as db:
            return await _reconcile(db, get_payment_provider)
    finally:
        await engine.dispose()


@celery_app.task(bind=True, base=BaseSweepTask, name="app.workers.tasks_subscriptions.expire_subscriptions")
def expire_subscriptions(self) -> int:
    expired = asyncio.run(_expire_subscriptions())
    logger.info("expire_subscriptions finished: %s expired", expired)
    return expired


@celery_app.task(bind=True, base=BaseSweepTask, name="app.workers.tasks_subscriptions.reconcile_stale_transactions")
def reconcile_stale_transactions(self) -> Dict[str, int]:
    return asyncio.run(_reconcile_stale_transactions())
