"""Pydantic schemas for v1 subscription and payment APIs."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


class MessageResponse(BaseModel):
    message: str


class ErrorResponse(BaseModel):
    error: str
    timestamp: datetime
    details: Optional[Dict[str, Any]] = None


class SubscriptionCreateRequest(BaseModel):
    agency_id: int
    plan_id: int
    payment_method: str = Field(default="mpesa", max_length=30)
    collection_dates: Optional[List[date]] = None
    auto_renew: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PaymentTransactionResponse(BaseModel):
    id: int
    status: str
    amount: Decimal
    currency: str
    payment_method: str
    payment_provider: str
    reference: Optional[str] = None
    checkout_url: Optional[str] = None
    error_message: Optional[str] = None
    verified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class SubscriptionResponse(BaseModel):
    id: int
    user_id: int
    agency_id: int
    plan_id: int
    status: str
    payment_status: str
    payment_method: str
    amount: Decimal
    currency: str
    collection_days: List[str] = Field(default_factory=list)
    custom_collection_dates: List[date] = Field(default_factory=list)
    auto_renew: bool = False
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    latest_transaction: Optional[PaymentTransactionResponse] = None


class CustomerDetails(BaseModel):
    email: Optional[EmailStr] = None
    phone_number: Optional[str] = Field(default=None, max_length=30)
    name: Optional[str] = Field(default=None, max_length=255)


class PaymentInitializeRequest(BaseModel):
    subscription_id: int
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(default="KES", min_length=3, max_length=3)
    payment_method: str = Field(default="mpesa", max_length=30)
    payment_provider: Optional[str] = Field(default=None, max_length=30)
    customer: CustomerDetails = Field(default_factory=CustomerDetails)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, value: str) -> str:
        return value.upper()


class PaymentInitializeResponse(BaseModel):
    checkout_url: str
    reference: Optional[str] = None
    status: str
    payment_transaction_id: int
    subscription_id: int


class PaymentVerifyRequest(BaseModel):
    reference: str = Field(..., min_length=1, max_length=255)
    subscription_id: int


class PaymentVerifyData(BaseModel):
    transaction_status: str
    subscription_status: str
    outcome: str
    payment_transaction_id: Optional[int] = None
    already_final: bool = False


class PaymentVerifyResponse(BaseModel):
    success: bool
    is_successful: bool
    message: str
    subscription_id: int
    data: PaymentVerifyData


class WebhookAckResponse(BaseModel):
    received: bool = True
    processed: bool = False
    outcome: Optional[str] = None
