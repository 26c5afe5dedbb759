"""Paystack (card network) adapter."""

import hashlib
import hmac
import json
import logging
from typing import Mapping
from urllib.parse import quote

from app.core.exceptions import ProviderError, ValidationError, WebhookSignatureError
from app.services.payment_service import (
    CheckoutSession,
    PaymentProvider,
    PaymentRequest,
    VerificationResult,
    WebhookEvent,
    parse_subscription_id,
    to_minor_units,
)

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = {"success"}
FAILED_STATUSES = {"failed", "reversed"}

CHANNELS_BY_METHOD = {
    "mpesa": ["mobile_money"],
    "mobile_money": ["mobile_money"],
    "card": ["card"],
    "bank": ["bank", "bank_transfer"],
}


class PaystackProvider(PaymentProvider):
    name = "paystack"

    def _headers(self) -> dict:
        secret = self.settings.PAYSTACK_SECRET_KEY.strip()
        if not secret:
            raise ProviderError("Paystack is not configured", provider=self.name)
        return {"Authorization": f"Bearer {secret}", "Content-Type": "application/json"}

    def _url(self, path: str) -> str:
        return f"{self.settings.PAYSTACK_API_URL.rstrip('/')}{path}"

    async def initiate(self, request: PaymentRequest) -> CheckoutSession:
        if not request.customer.email:
            raise ValidationError("Customer email is required for Paystack payments")

        # stable per ledger row
        reference = f"sub-{request.subscription_id}-{request.transaction_id}"
        scheme = self.settings.MOBILE_APP_SCHEME
        payload = {
            "email": request.customer.email,
            "amount": to_minor_units(request.amount),
            "currency": request.currency,
            "reference": reference,
            "callback_url": self.callback_url(),
            "metadata": {
                **request.metadata,
                "cancel_action": f"{scheme}payment/cancel?reference={reference}",
                "subscription_id": request.subscription_id,
                "payment_transaction_id": request.transaction_id,
                "customer_name": request.customer.name,
            },
        }
        channels = CHANNELS_BY_METHOD.get(request.payment_method)
        if channels:
            payload["channels"] = channels

        logger.info(
            "Initializing Paystack payment subscription=%s transaction=%s reference=%s",
            request.subscription_id,
            request.transaction_id,
            reference,
        )
        result = await self._send("POST", self._url("/transaction/initialize"), self._headers(), json=payload)
        if not result.get("status"):
            raise ProviderError(
                result.get("message") or "Payment initialization failed",
                provider=self.name,
                raw_response=result,
            )

        data = result.get("data") or {}
        checkout_url = data.get("authorization_url")
        if not checkout_url:
            raise ProviderError("No checkout URL in provider response", provider=self.name, raw_response=result)
        return CheckoutSession(
            checkout_url=checkout_url,
            provider_reference=data.get("reference") or reference,
            raw_response=result,
        )

    async def verify(self, reference: str) -> VerificationResult:
        url = self._url(f"/transaction/verify/{quote(reference, safe='')}")
        result = await self._send("GET", url, self._headers())
        if not result.get("status"):
            raise ProviderError(
                result.get("message") or "Payment verification failed",
                provider=self.name,
                raw_response=result,
            )

        status = str((result.get("data") or {}).get("status") or "").lower()
        if status in SUCCESS_STATUSES:
            outcome = "completed"
        elif status in FAILED_STATUSES:
            outcome = "failed"
        else:
            # abandoned, ongoing, pending, processing, queued
            outcome = "pending"
        logger.info("Paystack reference=%s status=%s outcome=%s", reference, status, outcome)
        return VerificationResult(outcome=outcome, raw_response=result)

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        lowered = {k.lower(): v for k, v in headers.items()}
        signature = lowered.get("x-paystack-signature")
        secret = self.settings.PAYSTACK_SECRET_KEY.strip()
        if not signature or not secret:
            raise WebhookSignatureError("Missing Paystack signature")

        expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()
        if not hmac.compare_digest(expected, signature):
            raise WebhookSignatureError("Invalid Paystack signature")

        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc

        data = payload.get("data") or {}
        metadata = data.get("metadata") or {}
        return WebhookEvent(
            event_type=payload.get("event"),
            reference=data.get("reference"),
            subscription_id=parse_subscription_id(metadata.get("subscription_id")),
            payload=payload,
        )
