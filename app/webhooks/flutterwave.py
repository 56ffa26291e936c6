from __future__ import annotations

import hashlib
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from services.billing_service import EVENT_PAYMENT_FAILED, EVENT_PAYMENT_SUCCESS, PaymentEvent
from services.exceptions import InvalidWebhookPayload
from webhooks.base import WebhookReceiver, verify_hmac


class FlutterwaveWebhookReceiver(WebhookReceiver):
    provider = "flutterwave"
    signature_header = "verif-hash"

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> None:
        verify_hmac(self.secret, raw_body, signature, hashlib.sha256)

    def parse_event(self, payload: Dict[str, Any]) -> Optional[PaymentEvent]:
        event_type = payload.get("event")
        data = payload.get("data") or {}
        status = data.get("status")

        if event_type == "charge.completed" and status == "successful":
            kind = EVENT_PAYMENT_SUCCESS
        elif event_type == "charge.failed" or (event_type == "charge.completed" and status == "failed"):
            kind = EVENT_PAYMENT_FAILED
        else:
            return None

        if data.get("id") is None:
            raise InvalidWebhookPayload("Flutterwave charge event without a transaction id")

        meta = data.get("meta") or data.get("meta_data") or {}
        try:
            amount = Decimal(str(data["amount"])) if data.get("amount") is not None else None
        except InvalidOperation:
            amount = None

        return PaymentEvent(
            type=kind,
            provider=self.provider,
            subscription_ref=str(meta.get("subscription_id") or data.get("tx_ref") or ""),
            external_txn_id=str(data["id"]),
            amount=amount,
            currency=data.get("currency"),
            status=status,
            raw_type=event_type,
            gateway_reference=data.get("flw_ref") or data.get("tx_ref"),
            payment_method=data.get("payment_type") and f"flutterwave_{data['payment_type']}",
        )
