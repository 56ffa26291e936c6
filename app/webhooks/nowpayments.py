from __future__ import annotations

import hashlib
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from services.billing_service import EVENT_PAYMENT_FAILED, EVENT_PAYMENT_SUCCESS, PaymentEvent
from services.exceptions import InvalidWebhookPayload
from webhooks.base import WebhookReceiver, verify_hmac

SUCCESS_STATUSES = ("finished",)
FAILURE_STATUSES = ("failed", "expired")


class NowPaymentsWebhookReceiver(WebhookReceiver):
    """NOWPayments IPN callbacks, signed with HMAC-SHA512 over the raw body."""

    provider = "nowpayments"
    signature_header = "x-nowpayments-sig"

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> None:
        verify_hmac(self.secret, raw_body, signature, hashlib.sha512)

    def parse_event(self, payload: Dict[str, Any]) -> Optional[PaymentEvent]:
        status = payload.get("payment_status")
        if status in SUCCESS_STATUSES:
            kind = EVENT_PAYMENT_SUCCESS
        elif status in FAILURE_STATUSES:
            kind = EVENT_PAYMENT_FAILED
        else:
            # waiting, confirming, sending, partially_paid: intermediate states
            return None

        if payload.get("payment_id") is None:
            raise InvalidWebhookPayload("NOWPayments IPN without payment_id")

        try:
            amount = Decimal(str(payload["price_amount"])) if payload.get("price_amount") is not None else None
        except InvalidOperation:
            amount = None

        return PaymentEvent(
            type=kind,
            provider=self.provider,
            subscription_ref=payload.get("order_id"),
            external_txn_id=str(payload["payment_id"]),
            amount=amount,
            currency=payload.get("price_currency"),
            status=status,
            raw_type=f"payment.{status}",
            gateway_reference=payload.get("pay_address"),
            payment_method=payload.get("pay_currency") and f"crypto_{payload['pay_currency']}",
        )
