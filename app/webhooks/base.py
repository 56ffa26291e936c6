"""Inbound payment notifications: verify, normalize, dispatch."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from services.billing_service import PaymentEvent, apply_payment_event
from services.exceptions import InvalidWebhookPayload, NotFound, SignatureInvalid


def hmac_hex(secret: str, body: bytes, digestmod: Callable = hashlib.sha256) -> str:
    return hmac.new(secret.encode("utf-8"), body, digestmod).hexdigest()


def verify_hmac(secret: str, body: bytes, signature: Optional[str], digestmod: Callable = hashlib.sha256) -> None:
    if not secret:
        raise SignatureInvalid("Webhook secret is not configured")
    if not signature:
        raise SignatureInvalid("Missing webhook signature")
    expected = hmac_hex(secret, body, digestmod)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise SignatureInvalid("Webhook signature mismatch")


class WebhookReceiver(ABC):
    provider = "base"
    signature_header = ""

    def __init__(self, secret: str):
        self.secret = secret
        self.logger = logging.getLogger(f"webhooks.{self.provider}")

    @abstractmethod
    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> None:
        """Raise SignatureInvalid unless ``signature`` authenticates ``raw_body``."""
        pass

    @abstractmethod
    def parse_event(self, payload: Dict[str, Any]) -> Optional[PaymentEvent]:
        """Map the provider payload to a PaymentEvent, or None when nothing needs doing."""
        pass

    def load(self, raw_body: bytes) -> Dict[str, Any]:
        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as e:
            raise InvalidWebhookPayload(f"{self.provider} webhook body is not JSON") from e
        if not isinstance(payload, dict):
            raise InvalidWebhookPayload(f"{self.provider} webhook body is not a JSON object")
        return payload

    def handle(self, db: Session, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        try:
            self.verify_signature(raw_body, signature)
        except SignatureInvalid as e:
            self.logger.warning("Rejected %s webhook: %s", self.provider, e)
            raise

        event = self.parse_event(self.load(raw_body))
        if event is None:
            self.logger.info("Ignoring %s webhook that needs no action", self.provider)
            return {"received": True}

        try:
            result = apply_payment_event(db, event)
        except NotFound as e:
            # acknowledged anyway: a redelivery would hit the same missing row
            self.logger.warning("%s webhook %s: %s", self.provider, event.external_txn_id, e)
            return {"received": True}

        if result is None:
            self.logger.info(
                "%s webhook %s (%s) -> no subscription change", self.provider, event.external_txn_id, event.raw_type,
            )
            return {"received": True}

        self.logger.info(
            "%s webhook %s (%s) -> subscription %s: %s",
            self.provider, event.external_txn_id, event.raw_type, result.subscription.id, result.outcome,
        )
        return {"received": True}
