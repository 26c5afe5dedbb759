import json
import os
from decimal import Decimal
from typing import Any, Mapping, Optional

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test_secret")
os.environ.setdefault("INTASEND_API_KEY", "ISSecretKey_test")
os.environ.setdefault("INTASEND_PUBLISHABLE_KEY", "ISPubKey_test")
os.environ.setdefault("PUBLIC_API_URL", "https://api.takataka.test")
os.environ.setdefault("PAYMENT_INIT_RATE_LIMIT", "0")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.config import get_settings
from app.core.exceptions import ProviderError, WebhookSignatureError
from app.database import Base
from app.models import Agency, PlanType, SubscriptionPlan, User, UserSubscription
from app.services.payment_service import (
    CheckoutSession,
    PaymentProvider,
    PaymentRequest,
    VerificationResult,
    WebhookEvent,
)


class FakeProvider(PaymentProvider):
    """In-memory gateway: records calls and returns whatever the test configures."""

    name = "fake"

    def __init__(self):
        super().__init__(get_settings())
        self.reference: Optional[str] = None
        self.verify_outcome = "completed"
        self.initiate_error: Optional[ProviderError] = None
        self.verify_error: Optional[ProviderError] = None
        self.initiate_calls = 0
        self.verify_calls = 0

    async def initiate(self, request: PaymentRequest) -> CheckoutSession:
        self.initiate_calls += 1
        if self.initiate_error is not None:
            raise self.initiate_error
        reference = self.reference or f"inv_{request.transaction_id}"
        return CheckoutSession(
            checkout_url=f"https://checkout.test/{reference}",
            provider_reference=reference,
            raw_response={"invoice": {"invoice_id": reference}},
        )

    async def verify(self, reference: str) -> VerificationResult:
        self.verify_calls += 1
        if self.verify_error is not None:
            raise self.verify_error
        return VerificationResult(outcome=self.verify_outcome, raw_response={"state": self.verify_outcome})

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        if headers.get("x-fake-signature") != "ok":
            raise WebhookSignatureError("Invalid fake signature")
        payload: Any = json.loads(body)
        return WebhookEvent(
            event_type=payload.get("event"),
            reference=payload.get("reference"),
            subscription_id=payload.get("subscription_id"),
            payload=payload,
        )


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def seeded(db):
    """Two users, one agency, a standard, a custom and an inactive plan."""
    user = User(id=1, email="jane@example.com", phone_number="0712345678", full_name="Jane Wanjiku", is_active=True)
    other = User(id=2, email="other@example.com", is_active=True)
    agency = Agency(id=1, name="Clean Nairobi", collection_days=["Tuesday", "Friday"])
    standard = SubscriptionPlan(
        id=1,
        agency_id=1,
        name="Monthly",
        price=Decimal("1000.00"),
        currency="KES",
        duration_days=30,
        plan_type=PlanType.STANDARD,
        is_active=True,
    )
    custom = SubscriptionPlan(
        id=2,
        agency_id=1,
        name="Pick your days",
        price=Decimal("1500.00"),
        currency="KES",
        duration_days=30,
        plan_type=PlanType.CUSTOM,
        is_active=True,
    )
    retired = SubscriptionPlan(
        id=3,
        agency_id=1,
        name="Legacy",
        price=Decimal("800.00"),
        currency="KES",
        duration_days=30,
        plan_type=PlanType.STANDARD,
        is_active=False,
    )
    db.add_all([user, other, agency, standard, custom, retired])
    await db.commit()
    return {"user": user, "other": other, "agency": agency, "standard": standard, "custom": custom, "retired": retired}


@pytest_asyncio.fixture
async def subscription(db, seeded):
    """Pending subscription 42: 1000 KES, standard plan, owned by user 1."""
    sub = UserSubscription(
        id=42,
        user_id=1,
        agency_id=1,
        plan_id=1,
        status="pending",
        payment_status="pending",
        payment_method="mpesa",
        amount=Decimal("1000.00"),
        currency="KES",
        collection_days=["Tuesday", "Friday"],
    )
    db.add(sub)
    await db.commit()
    return sub


@pytest.fixture
def fake_provider():
    return FakeProvider()
