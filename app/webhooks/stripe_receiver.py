from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional

import stripe

from services.billing_service import EVENT_PAYMENT_FAILED, EVENT_PAYMENT_SUCCESS, PaymentEvent
from services.exceptions import InvalidWebhookPayload, SignatureInvalid
from webhooks.base import WebhookReceiver


class StripeWebhookReceiver(WebhookReceiver):
    provider = "stripe"
    signature_header = "stripe-signature"

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> None:
        if not self.secret:
            raise SignatureInvalid("Webhook secret is not configured")
        if not signature:
            raise SignatureInvalid("Missing webhook signature")
        try:
            stripe.Webhook.construct_event(raw_body, signature, self.secret)
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalid(str(e)) from e
        except ValueError as e:
            raise InvalidWebhookPayload("Stripe webhook body is not JSON") from e

    def parse_event(self, payload: Dict[str, Any]) -> Optional[PaymentEvent]:
        event_type = payload.get("type")
        if event_type == "payment_intent.succeeded":
            kind = EVENT_PAYMENT_SUCCESS
        elif event_type == "payment_intent.payment_failed":
            kind = EVENT_PAYMENT_FAILED
        else:
            return None

        intent = (payload.get("data") or {}).get("object") or {}
        if not intent.get("id") or not payload.get("id"):
            raise InvalidWebhookPayload("Stripe event without ids")

        amount = intent.get("amount_received") if kind == EVENT_PAYMENT_SUCCESS else intent.get("amount")
        metadata = intent.get("metadata") or {}
        return PaymentEvent(
            type=kind,
            provider=self.provider,
            subscription_ref=metadata.get("subscription_id") or metadata.get("order_ref"),
            # a PaymentIntent succeeds once but may fail several times
            external_txn_id=intent["id"] if kind == EVENT_PAYMENT_SUCCESS else payload["id"],
            amount=(Decimal(amount) / 100).quantize(Decimal("0.01")) if amount is not None else None,
            currency=(intent.get("currency") or "").upper() or None,
            status=intent.get("status"),
            raw_type=event_type,
            gateway_reference=intent["id"],
            payment_method="stripe_card",
        )
