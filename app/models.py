"""SQLAlchemy database models for subscriptions and payments."""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from app.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")

OPEN_TRANSACTION_CLAUSE = "status IN ('pending', 'processing')"


class SubscriptionStatus:
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PaymentStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    OPEN = (PENDING, PROCESSING)
    TERMINAL = (COMPLETED, FAILED)


class PlanType:
    STANDARD = "standard"
    CUSTOM = "custom"


class User(Base):
    """Mobile app user (owned by the auth collaborator)."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    phone_number = Column(String(50), nullable=True)
    full_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    subscriptions = relationship("UserSubscription", back_populates="user")


class Agency(Base):
    """Waste-collection agency (read-only here)."""

    __tablename__ = "agencies"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    collection_days = Column(JSONType, nullable=False, default=lambda: ["Monday", "Thursday"])
    created_at = Column(DateTime, default=datetime.utcnow)

    plans = relationship("SubscriptionPlan", back_populates="agency")


class SubscriptionPlan(Base):
    """Agency plan catalog."""

    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, index=True)
    agency_id = Column(Integer, ForeignKey("agencies.id"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="KES")
    duration_days = Column(Integer, nullable=False, default=30)
    plan_type = Column(String(20), nullable=False, default=PlanType.STANDARD)
    features = Column(JSONType, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    agency = relationship("Agency", back_populates="plans")

    __table_args__ = (
        Index("idx_plans_agency_active", "agency_id", "is_active"),
    )


class UserSubscription(Base):
    """User subscription lifecycle."""

    __tablename__ = "user_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    agency_id = Column(Integer, ForeignKey("agencies.id"), nullable=False)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)
    status = Column(String(20), nullable=False, default=SubscriptionStatus.PENDING)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING)
    payment_method = Column(String(30), nullable=False, default="mpesa")
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="KES")
    custom_collection_dates = Column(JSONType, nullable=True)  # ISO dates, custom plans only
    collection_days = Column(JSONType, nullable=True)
    auto_renew = Column(Boolean, default=False)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    metadata_json = Column("metadata", JSONType, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="subscriptions")
    plan = relationship("SubscriptionPlan")
    transactions = relationship("PaymentTransaction", back_populates="subscription")

    __table_args__ = (
        Index("idx_sub_user_status", "user_id", "status"),
        Index("idx_sub_status_end", "status", "end_date"),
    )


class PaymentTransaction(Base):
    """One attempt to collect payment for a subscription. Never deleted."""

    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("user_subscriptions.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="KES")
    payment_method = Column(String(30), nullable=False)
    payment_provider = Column(String(30), nullable=False)
    provider_reference = Column(String(255), nullable=True, unique=True)
    checkout_url = Column(String(1000), nullable=True)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING)
    provider_response = Column(JSONType, nullable=True)
    error_message = Column(String(1000), nullable=True)
    verified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    subscription = relationship("UserSubscription", back_populates="transactions")

    __table_args__ = (
        # At most one open transaction per subscription
        Index(
            "uq_payment_tx_open_subscription",
            "subscription_id",
            unique=True,
            postgresql_where=text(OPEN_TRANSACTION_CLAUSE),
            sqlite_where=text(OPEN_TRANSACTION_CLAUSE),
        ),
        Index("idx_payment_tx_sub_created", "subscription_id", "created_at"),
        Index("idx_payment_tx_status_updated", "status", "updated_at"),
    )


class PaymentWebhook(Base):
    """Raw provider webhook deliveries, kept for audit."""

    __tablename__ = "payment_webhooks"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(30), nullable=False)
    event_type = Column(String(100), nullable=True)
    reference = Column(String(255), nullable=True)
    payload = Column(JSONType, nullable=True)
    signature_valid = Column(Boolean, default=False)
    received_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_webhooks_provider_ref", "provider", "reference"),
    )
