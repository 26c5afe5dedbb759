"""v1 payment endpoints: initiation, verification, provider webhooks and browser callback."""

import logging
from typing import Callable, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.exceptions import AuthorizationError, ProviderError
from app.core.rate_limit import enforce_payment_init_limit
from app.core.v1_dependencies import get_current_v1_user, get_provider_resolver
from app.database import get_db
from app.models import User
from app.schemas_v1 import (
    PaymentInitializeRequest,
    PaymentInitializeResponse,
    PaymentVerifyData,
    PaymentVerifyRequest,
    PaymentVerifyResponse,
    WebhookAckResponse,
)
from app.services import payment_ledger
from app.services.checkout_service import CheckoutRequest, initiate_payment
from app.services.payment_service import Customer, PaymentProvider
from app.services.payment_verifier import MESSAGE_FAILED, process_webhook, verify_payment
from app.services.subscription_service import get_subscription

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter()

ProviderResolver = Callable[[Optional[str]], PaymentProvider]

CANCELLED_CALLBACK_STATUSES = {"cancelled", "canceled", "failed", "abandoned"}


@router.post("/initialize", response_model=PaymentInitializeResponse)
async def initialize_payment(
    payload: PaymentInitializeRequest,
    current_user: User = Depends(get_current_v1_user),
    db: AsyncSession = Depends(get_db),
    resolve_provider: ProviderResolver = Depends(get_provider_resolver),
):
    enforce_payment_init_limit(current_user.id)
    provider = resolve_provider(payload.payment_provider)
    customer = Customer(
        email=payload.customer.email or current_user.email or "",
        phone_number=payload.customer.phone_number or current_user.phone_number or "",
        name=payload.customer.name or current_user.full_name or "",
    )
    result = await initiate_payment(
        db,
        provider,
        current_user,
        CheckoutRequest(
            subscription_id=payload.subscription_id,
            amount=payload.amount,
            currency=payload.currency,
            payment_method=payload.payment_method,
            customer=customer,
            metadata=payload.metadata,
        ),
    )
    return PaymentInitializeResponse(
        checkout_url=result.checkout_url,
        reference=result.reference,
        status=result.status,
        payment_transaction_id=result.transaction_id,
        subscription_id=result.subscription_id,
    )


@router.post("/verify", response_model=PaymentVerifyResponse)
async def verify_user_payment(
    payload: PaymentVerifyRequest,
    current_user: User = Depends(get_current_v1_user),
    db: AsyncSession = Depends(get_db),
    resolve_provider: ProviderResolver = Depends(get_provider_resolver),
):
    subscription = await get_subscription(db, payload.subscription_id)
    if subscription.user_id != current_user.id:
        raise AuthorizationError("Subscription does not belong to the current user")

    transaction = await payment_ledger.get_latest_for_subscription(db, payload.subscription_id, payload.reference)
    provider = resolve_provider(transaction.payment_provider if transaction else None)

    try:
        result = await verify_payment(db, provider, payload.reference, payload.subscription_id)
    except ProviderError as exc:
        logger.warning("Verification of %s failed: %s", payload.reference, exc.message)
        raise ProviderError(
            MESSAGE_FAILED,
            provider=exc.provider,
            status_code=exc.provider_status,
            raw_response=exc.raw_response,
        ) from exc

    return PaymentVerifyResponse(
        success=True,
        is_successful=result.is_successful,
        message=result.message,
        subscription_id=payload.subscription_id,
        data=PaymentVerifyData(
            transaction_status=result.transaction_status,
            subscription_status=result.subscription_status,
            outcome=result.outcome,
            payment_transaction_id=result.transaction_id,
            already_final=result.already_final,
        ),
    )


@router.post("/webhooks/{provider_name}", response_model=WebhookAckResponse)
async def provider_webhook(
    provider_name: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    resolve_provider: ProviderResolver = Depends(get_provider_resolver),
):
    provider = resolve_provider(provider_name)
    body = await request.body()
    result = await process_webhook(db, provider, request.headers, body)
    if result is None:
        return WebhookAckResponse(processed=False)
    return WebhookAckResponse(processed=True, outcome=result.outcome)


@router.get("/callback")
async def payment_callback(
    reference: Optional[str] = None,
    trxref: Optional[str] = None,
    invoice_id: Optional[str] = None,
    status: Optional[str] = None,
):
    """Browser lands here after hosted checkout; bounce back into the mobile app."""
    ref = reference or trxref or invoice_id or ""
    action = "cancel" if (status or "").lower() in CANCELLED_CALLBACK_STATUSES else "success"
    target = f"{settings.MOBILE_APP_SCHEME}payment/{action}?{urlencode({'reference': ref})}"
    return RedirectResponse(url=target, status_code=302)
