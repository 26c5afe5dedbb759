"""Payment transaction ledger.

Every attempt to collect money for a subscription is one ``PaymentTransaction``
row. Rows only move forward (pending -> processing -> completed/failed) and
a subscription has at most one open (pending or processing) row at a time,
backed by the ``uq_payment_tx_open_subscription`` partial unique index.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import LedgerStateError, NotFoundError, PersistenceError
from app.models import PaymentStatus, PaymentTransaction, UserSubscription

logger = logging.getLogger(__name__)


async def _get_open_transaction(db: AsyncSession, subscription_id: int) -> Optional[PaymentTransaction]:
    result = await db.execute(
        select(PaymentTransaction)
        .where(
            PaymentTransaction.subscription_id == subscription_id,
            PaymentTransaction.status.in_(PaymentStatus.OPEN),
        )
        .order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _lock_transaction(db: AsyncSession, transaction_id: int) -> PaymentTransaction:
    result = await db.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.id == transaction_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    transaction = result.scalar_one_or_none()
    if transaction is None:
        raise NotFoundError("Payment transaction not found", {"transaction_id": transaction_id})
    return transaction


async def get_or_create_pending(
    db: AsyncSession,
    subscription: UserSubscription,
    amount: Decimal,
    currency: str,
    payment_method: str,
    payment_provider: str,
) -> PaymentTransaction:
    """Return the subscription's open transaction, creating a pending one if none exists.

    Callers must have committed earlier work: a losing concurrent insert
    rolls the session back before re-reading the winner's row.
    """
    subscription_id = subscription.id
    user_id = subscription.user_id

    existing = await _get_open_transaction(db, subscription_id)
    if existing is not None:
        logger.info(
            "Reusing open transaction %s (%s) for subscription %s",
            existing.id,
            existing.status,
            subscription_id,
        )
        return existing

    transaction = PaymentTransaction(
        subscription_id=subscription_id,
        user_id=user_id,
        amount=amount,
        currency=currency,
        payment_method=payment_method,
        payment_provider=payment_provider,
        status=PaymentStatus.PENDING,
    )
    db.add(transaction)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        winner = await _get_open_transaction(db, subscription_id)
        if winner is None:
            logger.error("Open transaction insert for subscription %s conflicted with no visible winner", subscription_id)
            raise PersistenceError("Could not create payment transaction")
        logger.info("Concurrent initiation for subscription %s; using transaction %s", subscription_id, winner.id)
        return winner
    except SQLAlchemyError as exc:
        logger.exception("Failed to create transaction for subscription %s", subscription_id)
        raise PersistenceError("Could not create payment transaction") from exc

    logger.info("Created pending transaction %s for subscription %s", transaction.id, subscription_id)
    return transaction


async def record_gateway_accepted(
    db: AsyncSession,
    transaction_id: int,
    provider_reference: str,
    checkout_url: str,
    raw_response: Dict[str, Any],
    payment_provider: Optional[str] = None,
) -> PaymentTransaction:
    transaction = await _lock_transaction(db, transaction_id)

    if transaction.status in PaymentStatus.TERMINAL:
        raise LedgerStateError(
            "Payment transaction is already finalized",
            {"transaction_id": transaction_id, "status": transaction.status},
        )
    if transaction.status == PaymentStatus.PROCESSING:
        if transaction.provider_reference == provider_reference:
            return transaction
        raise LedgerStateError(
            "Payment transaction already has a different provider reference",
            {"transaction_id": transaction_id},
        )

    transaction.status = PaymentStatus.PROCESSING
    transaction.provider_reference = provider_reference
    transaction.checkout_url = checkout_url
    transaction.provider_response = {"initiation": raw_response}
    if payment_provider:
        transaction.payment_provider = payment_provider
    transaction.updated_at = datetime.utcnow()
    try:
        await db.flush()
    except SQLAlchemyError as exc:
        logger.exception("Failed to record gateway acceptance for transaction %s", transaction_id)
        raise PersistenceError("Could not record payment initiation") from exc
    return transaction


async def mark_terminal(
    db: AsyncSession,
    transaction_id: int,
    outcome: str,
    raw_response: Optional[Dict[str, Any]],
    error_message: Optional[str] = None,
    stage: str = "verification",
    provider_reference: Optional[str] = None,
) -> Tuple[PaymentTransaction, bool]:
    """Move a transaction to completed/failed. Returns (transaction, changed).

    A transaction that is already terminal is returned untouched with
    changed=False, so duplicate webhooks and polls cause no side effects.
    """
    if outcome not in PaymentStatus.TERMINAL:
        raise ValueError(f"Not a terminal outcome: {outcome}")

    transaction = await _lock_transaction(db, transaction_id)
    if transaction.status in PaymentStatus.TERMINAL:
        logger.info(
            "Transaction %s already %s; ignoring %s",
            transaction_id,
            transaction.status,
            outcome,
        )
        return transaction, False

    now = datetime.utcnow()
    transaction.status = outcome
    if provider_reference and not transaction.provider_reference:
        # gateway accepted the payment but acceptance was never recorded
        transaction.provider_reference = provider_reference
    transaction.provider_response = {**(transaction.provider_response or {}), stage: raw_response}
    if error_message:
        transaction.error_message = error_message[:1000]
    if outcome == PaymentStatus.COMPLETED:
        transaction.verified_at = now
    transaction.updated_at = now
    try:
        await db.flush()
    except SQLAlchemyError as exc:
        logger.exception("Failed to mark transaction %s as %s", transaction_id, outcome)
        raise PersistenceError("Could not update payment transaction") from exc

    logger.info("Transaction %s -> %s", transaction_id, outcome)
    return transaction, True


async def get_latest_for_subscription(
    db: AsyncSession,
    subscription_id: int,
    reference: Optional[str] = None,
) -> Optional[PaymentTransaction]:
    """Latest transaction for a subscription, preferring the one carrying ``reference``."""
    if reference:
        result = await db.execute(
            select(PaymentTransaction).where(
                PaymentTransaction.subscription_id == subscription_id,
                PaymentTransaction.provider_reference == reference,
            )
        )
        matched = result.scalar_one_or_none()
        if matched is not None:
            return matched

    result = await db.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.subscription_id == subscription_id)
        .order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_by_reference(db: AsyncSession, reference: str) -> Optional[PaymentTransaction]:
    result = await db.execute(
        select(PaymentTransaction).where(PaymentTransaction.provider_reference == reference)
    )
    return result.scalar_one_or_none()
