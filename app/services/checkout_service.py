"""Payment initiation: subscription -> ledger -> gateway, committing after each step."""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    AuthorizationError,
    PersistenceError,
    ProviderError,
    ValidationError,
)
from app.models import PaymentStatus, SubscriptionStatus, User
from app.services import payment_ledger
from app.services.payment_service import Customer, PaymentProvider, PaymentRequest
from app.services.subscription_service import (
    get_subscription,
    mark_subscription_failed,
    mark_subscription_processing,
)

logger = logging.getLogger(__name__)

MESSAGE_NOT_STARTED = "Payment could not be started, try again"


@dataclass(frozen=True)
class CheckoutRequest:
    subscription_id: int
    amount: Decimal
    currency: str
    payment_method: str
    customer: Customer
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InitiationResult:
    checkout_url: str
    reference: str
    transaction_id: int
    subscription_id: int
    status: str = PaymentStatus.PROCESSING
    reused: bool = False


def _same_amount(requested: Any, stored: Any) -> bool:
    return Decimal(str(requested)).quantize(Decimal("0.01")) == Decimal(str(stored)).quantize(Decimal("0.01"))


async def initiate_payment(
    db: AsyncSession,
    provider: PaymentProvider,
    user: User,
    request: CheckoutRequest,
) -> InitiationResult:
    subscription = await get_subscription(db, request.subscription_id)
    if subscription.user_id != user.id:
        raise AuthorizationError("Subscription does not belong to the current user")
    if subscription.status != SubscriptionStatus.PENDING or subscription.payment_status == PaymentStatus.COMPLETED:
        raise ValidationError(
            "Subscription is not awaiting payment",
            {"status": subscription.status, "payment_status": subscription.payment_status},
        )
    if not _same_amount(request.amount, subscription.amount):
        raise ValidationError("Amount does not match the subscription price")
    if request.currency.upper() != subscription.currency.upper():
        raise ValidationError("Currency does not match the subscription")

    subscription_id = subscription.id
    amount = Decimal(str(subscription.amount))
    currency = subscription.currency

    transaction = await payment_ledger.get_or_create_pending(
        db,
        subscription,
        amount,
        currency,
        request.payment_method,
        provider.name,
    )
    await db.commit()
    transaction_id = transaction.id

    if transaction.status == PaymentStatus.PROCESSING and transaction.checkout_url:
        logger.info("Returning existing checkout for transaction %s", transaction_id)
        return InitiationResult(
            checkout_url=transaction.checkout_url,
            reference=transaction.provider_reference,
            transaction_id=transaction_id,
            subscription_id=subscription_id,
            reused=True,
        )

    payment_request = PaymentRequest(
        subscription_id=subscription_id,
        transaction_id=transaction_id,
        amount=amount,
        currency=currency,
        payment_method=request.payment_method,
        customer=request.customer,
        metadata=dict(request.metadata),
    )
    try:
        session = await provider.initiate(payment_request)
    except ProviderError as exc:
        try:
            await payment_ledger.mark_terminal(
                db,
                transaction_id,
                PaymentStatus.FAILED,
                exc.raw_response if isinstance(exc.raw_response, dict) else {"error": exc.message},
                error_message=exc.message,
                stage="initiation",
            )
            await mark_subscription_failed(db, subscription_id)
            await db.commit()
        except (PersistenceError, SQLAlchemyError):
            await db.rollback()
            logger.exception("Could not record failed initiation for transaction %s", transaction_id)
        logger.warning(
            "%s initiation failed for subscription %s: %s",
            provider.name,
            subscription_id,
            exc.message,
        )
        raise ProviderError(
            MESSAGE_NOT_STARTED,
            provider=exc.provider,
            status_code=exc.provider_status,
            raw_response=exc.raw_response,
        ) from exc

    try:
        await payment_ledger.record_gateway_accepted(
            db,
            transaction_id,
            session.provider_reference,
            session.checkout_url,
            session.raw_response,
            payment_provider=provider.name,
        )
        await mark_subscription_processing(db, subscription_id)
        await db.commit()
    except (PersistenceError, SQLAlchemyError) as exc:
        # never hand out a checkout the ledger does not carry
        await db.rollback()
        logger.exception(
            "Gateway accepted transaction %s (reference %s) but it could not be recorded",
            transaction_id,
            session.provider_reference,
        )
        if isinstance(exc, PersistenceError):
            raise
        raise PersistenceError("Could not record payment initiation") from exc

    logger.info(
        "Payment started for subscription %s via %s (transaction %s)",
        subscription_id,
        provider.name,
        transaction_id,
    )
    return InitiationResult(
        checkout_url=session.checkout_url,
        reference=session.provider_reference,
        transaction_id=transaction_id,
        subscription_id=subscription_id,
    )
