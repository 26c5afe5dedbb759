"""v1 subscription endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AuthorizationError
from app.core.v1_dependencies import get_current_v1_user
from app.database import get_db
from app.models import PaymentTransaction, User, UserSubscription
from app.schemas_v1 import (
    PaymentTransactionResponse,
    SubscriptionCreateRequest,
    SubscriptionResponse,
)
from app.services import payment_ledger
from app.services.plan_catalog import get_agency, get_plan
from app.services.subscription_service import (
    build_subscription_draft,
    cancel_subscription,
    create_subscription,
    get_subscription,
)

router = APIRouter()


def _transaction_response(tx: Optional[PaymentTransaction]) -> Optional[PaymentTransactionResponse]:
    if tx is None:
        return None
    return PaymentTransactionResponse(
        id=tx.id,
        status=tx.status,
        amount=tx.amount,
        currency=tx.currency,
        payment_method=tx.payment_method,
        payment_provider=tx.payment_provider,
        reference=tx.provider_reference,
        checkout_url=tx.checkout_url,
        error_message=tx.error_message,
        verified_at=tx.verified_at,
        created_at=tx.created_at,
    )


def _subscription_response(
    subscription: UserSubscription,
    latest: Optional[PaymentTransaction] = None,
) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=subscription.id,
        user_id=subscription.user_id,
        agency_id=subscription.agency_id,
        plan_id=subscription.plan_id,
        status=subscription.status,
        payment_status=subscription.payment_status,
        payment_method=subscription.payment_method,
        amount=subscription.amount,
        currency=subscription.currency,
        collection_days=subscription.collection_days or [],
        custom_collection_dates=subscription.custom_collection_dates or [],
        auto_renew=bool(subscription.auto_renew),
        start_date=subscription.start_date,
        end_date=subscription.end_date,
        created_at=subscription.created_at,
        latest_transaction=_transaction_response(latest),
    )


@router.post("", response_model=SubscriptionResponse)
async def create_user_subscription(
    payload: SubscriptionCreateRequest,
    current_user: User = Depends(get_current_v1_user),
    db: AsyncSession = Depends(get_db),
):
    agency = await get_agency(db, payload.agency_id)
    plan = await get_plan(db, payload.plan_id)
    draft = build_subscription_draft(
        current_user.id,
        agency,
        plan,
        selection=payload.collection_dates,
        payment_method=payload.payment_method,
    )
    subscription = await create_subscription(db, draft, metadata=payload.metadata, auto_renew=payload.auto_renew)
    return _subscription_response(subscription)


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_user_subscription(
    subscription_id: int,
    current_user: User = Depends(get_current_v1_user),
    db: AsyncSession = Depends(get_db),
):
    subscription = await get_subscription(db, subscription_id)
    if subscription.user_id != current_user.id:
        raise AuthorizationError("Subscription does not belong to the current user")
    latest = await payment_ledger.get_latest_for_subscription(db, subscription_id)
    return _subscription_response(subscription, latest)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_user_subscription(
    subscription_id: int,
    current_user: User = Depends(get_current_v1_user),
    db: AsyncSession = Depends(get_db),
):
    subscription = await cancel_subscription(db, subscription_id, current_user.id)
    return _subscription_response(subscription)
