"""Payment gateway abstraction: one PaymentProvider per provider, selected by name."""

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Mapping, Optional

import httpx

from app.config import Settings, get_settings
from app.core.exceptions import ProviderError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Customer:
    email: str = ""
    phone_number: str = ""
    name: str = ""


@dataclass(frozen=True)
class PaymentRequest:
    subscription_id: int
    transaction_id: int
    amount: Decimal
    currency: str
    payment_method: str
    customer: Customer
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutSession:
    checkout_url: str
    provider_reference: str
    raw_response: Dict[str, Any]


@dataclass(frozen=True)
class VerificationResult:
    outcome: str  # completed | failed | pending
    raw_response: Dict[str, Any]

    @property
    def is_successful(self) -> bool:
        return self.outcome == "completed"

    @property
    def is_final(self) -> bool:
        return self.outcome in ("completed", "failed")


@dataclass(frozen=True)
class WebhookEvent:
    event_type: Optional[str]
    reference: Optional[str]
    subscription_id: Optional[int]
    payload: Dict[str, Any]


def normalize_phone_number(phone: Optional[str], country_code: Optional[str] = None) -> str:
    """Return the number in international format, e.g. 0712345678 -> +254712345678."""
    if not phone:
        return ""
    cleaned = phone.strip().replace(" ", "").replace("-", "")
    if cleaned.startswith("+"):
        return cleaned
    code = (country_code or get_settings().DEFAULT_COUNTRY_CODE).lstrip("+")
    if cleaned.startswith("0"):
        return f"+{code}{cleaned[1:]}"
    return f"+{cleaned}"


def to_minor_units(amount: Any) -> int:
    """Convert a major-unit amount (e.g. 1000.50 KES) to the smallest unit (100050)."""
    value = Decimal(str(amount)) * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_subscription_id(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class PaymentProvider:
    """Remote-call boundary to one payment gateway. Never touches the database."""

    name = "base"

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._http_client = http_client

    async def initiate(self, request: PaymentRequest) -> CheckoutSession:
        raise NotImplementedError

    async def verify(self, reference: str) -> VerificationResult:
        raise NotImplementedError

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        raise NotImplementedError

    def callback_url(self) -> str:
        return f"{self.settings.PUBLIC_API_URL.rstrip('/')}/v1/payments/callback"

    def webhook_url(self) -> str:
        return f"{self.settings.PUBLIC_API_URL.rstrip('/')}/v1/payments/webhooks/{self.name}"

    async def _send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            if self._http_client is not None:
                response = await self._http_client.request(method, url, headers=headers, json=json)
            else:
                async with httpx.AsyncClient(timeout=self.settings.PAYMENT_HTTP_TIMEOUT_SECONDS) as client:
                    response = await client.request(method, url, headers=headers, json=json)
        except httpx.HTTPError as exc:
            logger.warning("%s request to %s failed: %s", self.name, url, exc)
            raise ProviderError("Payment provider is unreachable", provider=self.name) from exc

        try:
            data = response.json()
        except ValueError as exc:
            logger.error("%s returned a non-JSON body (status %s)", self.name, response.status_code)
            raise ProviderError(
                "Invalid response from payment provider",
                provider=self.name,
                status_code=response.status_code,
                raw_response={"body": response.text[:2000]},
            ) from exc

        if response.is_error or not isinstance(data, dict):
            message = data.get("message") if isinstance(data, dict) else None
            logger.warning("%s rejected request (status %s): %s", self.name, response.status_code, message)
            raise ProviderError(
                message or "Payment provider rejected the request",
                provider=self.name,
                status_code=response.status_code,
                raw_response=data if isinstance(data, dict) else {"body": data},
            )
        return data


def _provider_classes() -> Dict[str, type]:
    from app.services.providers.intasend import IntaSendProvider
    from app.services.providers.paystack import PaystackProvider

    return {
        PaystackProvider.name: PaystackProvider,
        IntaSendProvider.name: IntaSendProvider,
    }


def get_payment_provider(name: Optional[str] = None) -> PaymentProvider:
    settings = get_settings()
    key = (name or settings.DEFAULT_PAYMENT_PROVIDER).strip().lower()
    provider_cls = _provider_classes().get(key)
    if provider_cls is None:
        raise ValidationError(f"Unsupported payment provider: {name}")
    return provider_cls(settings)
