"""IntaSend (M-PESA mobile money) adapter."""

import hmac
import json
import logging
from typing import Mapping, Optional

from app.core.exceptions import ProviderError, ValidationError, WebhookSignatureError
from app.services.payment_service import (
    CheckoutSession,
    PaymentProvider,
    PaymentRequest,
    VerificationResult,
    WebhookEvent,
    normalize_phone_number,
    parse_subscription_id,
)

logger = logging.getLogger(__name__)

COMPLETED_STATES = {"COMPLETE", "COMPLETED"}
FAILED_STATES = {"FAILED", "CANCELLED", "CANCELED"}


def _subscription_from_api_ref(api_ref: Optional[str]) -> Optional[int]:
    # api_ref is "sub-<subscription_id>-<transaction_id>"
    if not api_ref or not api_ref.startswith("sub-"):
        return None
    parts = api_ref.split("-")
    return parse_subscription_id(parts[1]) if len(parts) >= 2 else None


class IntaSendProvider(PaymentProvider):
    name = "intasend"

    def _headers(self) -> dict:
        api_key = self.settings.INTASEND_API_KEY.strip()
        public_key = self.settings.INTASEND_PUBLISHABLE_KEY.strip()
        if not api_key or not public_key:
            raise ProviderError("IntaSend is not configured", provider=self.name)
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "X-IntaSend-Public-API-Key": public_key,
        }

    async def initiate(self, request: PaymentRequest) -> CheckoutSession:
        payload = {
            "amount": float(request.amount),
            "currency": request.currency,
            "customer": {
                "email": request.customer.email,
                "phone_number": normalize_phone_number(request.customer.phone_number),
                "name": request.customer.name,
            },
            "payment_method": "M-PESA" if request.payment_method == "mpesa" else "CARD",
            "api_ref": f"sub-{request.subscription_id}-{request.transaction_id}",
            "redirect_url": self.callback_url(),
            "notification_url": self.webhook_url(),
            "metadata": {
                **request.metadata,
                "subscription_id": request.subscription_id,
                "payment_transaction_id": request.transaction_id,
            },
        }

        logger.info(
            "Initializing IntaSend payment subscription=%s transaction=%s",
            request.subscription_id,
            request.transaction_id,
        )
        url = f"{self.settings.intasend_api_url}/payments/initiate/"
        result = await self._send("POST", url, self._headers(), json=payload)

        invoice = result.get("invoice") or {}
        reference = invoice.get("invoice_id") or invoice.get("id")
        checkout_url = result.get("checkout_url") or result.get("url")
        if not reference or not checkout_url:
            raise ProviderError("Incomplete response from payment provider", provider=self.name, raw_response=result)
        return CheckoutSession(checkout_url=checkout_url, provider_reference=str(reference), raw_response=result)

    async def verify(self, reference: str) -> VerificationResult:
        url = f"{self.settings.intasend_api_url}/payments/status/"
        result = await self._send("POST", url, self._headers(), json={"invoice_id": reference})

        state = str((result.get("invoice") or {}).get("state") or "").upper()
        if state in COMPLETED_STATES:
            outcome = "completed"
        elif state in FAILED_STATES:
            outcome = "failed"
        else:
            outcome = "pending"
        logger.info("IntaSend invoice=%s state=%s outcome=%s", reference, state, outcome)
        return VerificationResult(outcome=outcome, raw_response=result)

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc

        expected = self.settings.INTASEND_WEBHOOK_CHALLENGE
        if expected:
            challenge = str(payload.get("challenge") or "")
            if not hmac.compare_digest(expected, challenge):
                raise WebhookSignatureError("Invalid IntaSend webhook challenge")

        invoice = payload.get("invoice") or {}
        reference = payload.get("invoice_id") or invoice.get("invoice_id")
        metadata = payload.get("metadata") or {}
        subscription_id = parse_subscription_id(metadata.get("subscription_id"))
        if subscription_id is None:
            subscription_id = _subscription_from_api_ref(payload.get("api_ref"))
        return WebhookEvent(
            event_type=payload.get("state") or payload.get("event"),
            reference=str(reference) if reference else None,
            subscription_id=subscription_id,
            payload=payload,
        )
