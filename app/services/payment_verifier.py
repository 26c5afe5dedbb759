"""Reconcile gateway outcomes into transaction and subscription state.

Both the client poll (``/v1/payments/verify``) and provider webhooks end up
in :func:`verify_payment`. Terminal transitions are no-ops when repeated, so
a webhook racing a poll activates the subscription exactly once.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.exceptions import NotFoundError, PaymentsAPIError, ValidationError, WebhookSignatureError
from app.models import PaymentStatus, PaymentTransaction, PaymentWebhook, SubscriptionPlan
from app.services import payment_ledger
from app.services.payment_service import PaymentProvider
from app.services.subscription_service import (
    activate_subscription,
    get_subscription,
    mark_subscription_failed,
)

logger = logging.getLogger(__name__)
settings = get_settings()

MESSAGE_SUCCESS = "Payment confirmed. Your subscription is active."
MESSAGE_FAILED = "Payment not confirmed"
MESSAGE_PENDING = "Payment is still being processed, retry later"


@dataclass(frozen=True)
class ReconciliationResult:
    transaction_status: str
    subscription_status: str
    outcome: str
    message: str
    transaction_id: Optional[int] = None
    subscription_id: Optional[int] = None
    raw_response: Dict[str, Any] = field(default_factory=dict)
    already_final: bool = False

    @property
    def is_successful(self) -> bool:
        return self.outcome == PaymentStatus.COMPLETED


def _message_for(outcome: str) -> str:
    if outcome == PaymentStatus.COMPLETED:
        return MESSAGE_SUCCESS
    if outcome == PaymentStatus.FAILED:
        return MESSAGE_FAILED
    return MESSAGE_PENDING


async def _plan_duration(db: AsyncSession, plan_id: int) -> int:
    result = await db.execute(select(SubscriptionPlan.duration_days).where(SubscriptionPlan.id == plan_id))
    duration = result.scalar_one_or_none()
    if duration is None:
        raise NotFoundError("Subscription plan not found", {"plan_id": plan_id})
    if duration <= 0:
        raise ValidationError("Subscription plan has no billing period", {"plan_id": plan_id})
    return duration


async def verify_payment(
    db: AsyncSession,
    provider: PaymentProvider,
    reference: str,
    subscription_id: int,
) -> ReconciliationResult:
    if not reference:
        raise ValidationError("Payment reference is required")

    subscription = await get_subscription(db, subscription_id)
    transaction = await payment_ledger.get_latest_for_subscription(db, subscription_id, reference)
    if transaction is None:
        raise NotFoundError("No payment found for this subscription", {"subscription_id": subscription_id})

    if transaction.provider_reference and transaction.provider_reference != reference:
        owner = await payment_ledger.get_by_reference(db, reference)
        if owner is not None and owner.subscription_id != subscription_id:
            raise ValidationError("Payment reference does not belong to this subscription")
        raise ValidationError("Payment reference does not match the latest payment")

    transaction_id = transaction.id
    if transaction.status in PaymentStatus.TERMINAL:
        logger.info("Transaction %s already %s; skipping gateway call", transaction_id, transaction.status)
        return ReconciliationResult(
            transaction_status=transaction.status,
            subscription_status=subscription.status,
            outcome=transaction.status,
            message=_message_for(transaction.status),
            transaction_id=transaction_id,
            subscription_id=subscription_id,
            raw_response=(transaction.provider_response or {}).get("verification") or {},
            already_final=True,
        )

    plan_id = subscription.plan_id
    result = await provider.verify(reference)

    if not result.is_final:
        logger.info("Payment %s for subscription %s still pending", reference, subscription_id)
        return ReconciliationResult(
            transaction_status=transaction.status,
            subscription_status=subscription.status,
            outcome="pending",
            message=MESSAGE_PENDING,
            transaction_id=transaction_id,
            subscription_id=subscription_id,
            raw_response=result.raw_response,
        )

    duration = await _plan_duration(db, plan_id) if result.is_successful else None
    transaction, changed = await payment_ledger.mark_terminal(
        db,
        transaction_id,
        result.outcome,
        result.raw_response,
        error_message=None if result.is_successful else MESSAGE_FAILED,
        provider_reference=reference,
    )
    if changed:
        if result.is_successful:
            subscription = await activate_subscription(db, subscription_id, datetime.utcnow(), duration)
        else:
            subscription = await mark_subscription_failed(db, subscription_id)
    else:
        subscription = await get_subscription(db, subscription_id)

    transaction_status = transaction.status
    subscription_status = subscription.status
    await db.commit()

    logger.info(
        "Reconciled payment %s: transaction=%s subscription=%s",
        reference,
        transaction_status,
        subscription_status,
    )
    return ReconciliationResult(
        transaction_status=transaction_status,
        subscription_status=subscription_status,
        outcome=transaction_status,
        message=_message_for(transaction_status),
        transaction_id=transaction_id,
        subscription_id=subscription_id,
        raw_response=result.raw_response,
        already_final=not changed,
    )


async def process_webhook(
    db: AsyncSession,
    provider: PaymentProvider,
    headers: Mapping[str, str],
    body: bytes,
) -> Optional[ReconciliationResult]:
    """Store the delivery for audit, then reconcile it like a client poll.

    Returns None when the event cannot be tied to a known payment.
    """
    try:
        event = provider.parse_webhook(headers, body)
    except WebhookSignatureError:
        db.add(
            PaymentWebhook(
                provider=provider.name,
                payload={"raw": body.decode("utf-8", "replace")[:5000]},
                signature_valid=False,
            )
        )
        await db.commit()
        logger.warning("Rejected %s webhook with invalid signature", provider.name)
        raise

    db.add(
        PaymentWebhook(
            provider=provider.name,
            event_type=event.event_type,
            reference=event.reference,
            payload=event.payload,
            signature_valid=True,
        )
    )
    await db.commit()

    if not event.reference:
        logger.info("%s webhook %s carries no payment reference", provider.name, event.event_type)
        return None

    subscription_id = event.subscription_id
    if subscription_id is None:
        transaction = await payment_ledger.get_by_reference(db, event.reference)
        if transaction is None:
            logger.warning("%s webhook for unknown reference %s", provider.name, event.reference)
            return None
        subscription_id = transaction.subscription_id

    return await verify_payment(db, provider, event.reference, subscription_id)


async def reconcile_stale_transactions(
    db: AsyncSession,
    resolve_provider: Callable[[Optional[str]], PaymentProvider],
    older_than_minutes: Optional[int] = None,
    limit: Optional[int] = None,
) -> Dict[str, int]:
    """Re-verify processing transactions the gateway never reported back on."""
    minutes = older_than_minutes if older_than_minutes is not None else settings.RECONCILE_AFTER_MINUTES
    cutoff = datetime.utcnow() - timedelta(minutes=minutes)
    result = await db.execute(
        select(
            PaymentTransaction.id,
            PaymentTransaction.subscription_id,
            PaymentTransaction.provider_reference,
            PaymentTransaction.payment_provider,
        )
        .where(
            PaymentTransaction.status == PaymentStatus.PROCESSING,
            PaymentTransaction.provider_reference.is_not(None),
            PaymentTransaction.updated_at < cutoff,
        )
        .order_by(PaymentTransaction.updated_at)
        .limit(limit or settings.RECONCILE_BATCH_SIZE)
    )
    stale = result.all()

    counts = {"completed": 0, "failed": 0, "pending": 0, "errors": 0}
    for tx_id, subscription_id, reference, provider_name in stale:
        try:
            outcome = await verify_payment(db, resolve_provider(provider_name), reference, subscription_id)
        except (PaymentsAPIError, SQLAlchemyError) as exc:
            await db.rollback()
            logger.warning("Could not reconcile transaction %s: %s", tx_id, exc)
            counts["errors"] += 1
            continue
        counts[outcome.outcome] = counts.get(outcome.outcome, 0) + 1

    if stale:
        logger.info("Stale transaction sweep: %s", counts)
    return counts
