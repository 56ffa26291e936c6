from __future__ import annotations

from decimal import Decimal
from typing import Any

import stripe

from payments.base import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_REQUIRES_ACTION,
    STATUS_SUCCEEDED,
    PaymentProvider,
    PaymentRequest,
    PaymentResult,
    PaymentVerification,
    parse_order_ref,
)
from services.exceptions import (
    InvalidRequest,
    PaymentDeclined,
    PaymentProviderError,
    ProviderUnavailable,
)

_STATUS_MAP = {
    "succeeded": STATUS_SUCCEEDED,
    "canceled": STATUS_FAILED,
    "requires_action": STATUS_REQUIRES_ACTION,
    "requires_confirmation": STATUS_REQUIRES_ACTION,
    "requires_capture": STATUS_PENDING,
    "processing": STATUS_PENDING,
    "requires_payment_method": STATUS_PENDING,
}


def _field(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, AttributeError):
        value = getattr(obj, key, default)
    return default if value is None else value


def _as_dict(obj: Any) -> dict:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return dict(obj)
    to_dict = getattr(obj, "to_dict", None)
    return to_dict() if callable(to_dict) else {}


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def from_minor_units(amount: int | None) -> Decimal | None:
    if amount is None:
        return None
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


class StripeProvider(PaymentProvider):
    name = "stripe"
    supports_idempotency = True

    def __init__(self, secret_key: str, timeout: float):
        super().__init__(timeout)
        self.secret_key = secret_key
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    def _translate(self, exc: stripe.StripeError, action: str) -> PaymentProviderError:
        self.logger.error("Stripe %s failed: %s", action, exc)
        message = getattr(exc, "user_message", None) or str(exc)
        if isinstance(exc, stripe.CardError):
            return PaymentDeclined(message, provider=self.name)
        if isinstance(exc, (stripe.InvalidRequestError, stripe.IdempotencyError)):
            return InvalidRequest(message, provider=self.name)
        return ProviderUnavailable(message, provider=self.name)

    def create_payment(self, request: PaymentRequest) -> PaymentResult:
        if not self.secret_key:
            raise ProviderUnavailable("Stripe is not configured", provider=self.name)

        metadata = {k: str(v) for k, v in request.metadata.items()}
        metadata["order_ref"] = request.order_ref
        if request.subscription_id is not None:
            metadata["subscription_id"] = str(request.subscription_id)
        params = {
            "amount": to_minor_units(request.amount),
            "currency": request.currency.lower(),
            "description": request.description,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if request.customer_email:
            params["receipt_email"] = request.customer_email

        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.secret_key,
                idempotency_key=request.idempotency_key,
                **params,
            )
        except stripe.StripeError as e:
            raise self._translate(e, "create_payment") from e

        next_action = _field(intent, "next_action")
        redirect = _field(_field(next_action, "redirect_to_url"), "url")
        self.logger.info("Stripe PaymentIntent %s created for %s", _field(intent, "id"), request.order_ref)
        return PaymentResult(
            id=_field(intent, "id"),
            status=_STATUS_MAP.get(_field(intent, "status"), STATUS_PENDING),
            provider_ref=_field(intent, "id"),
            client_secret=_field(intent, "client_secret"),
            redirect_url=redirect,
        )

    def verify(self, reference: str) -> PaymentVerification:
        if not self.secret_key:
            raise ProviderUnavailable("Stripe is not configured", provider=self.name)
        try:
            intent = stripe.PaymentIntent.retrieve(reference, api_key=self.secret_key)
        except stripe.StripeError as e:
            raise self._translate(e, "verify") from e

        raw_status = _field(intent, "status")
        status = _STATUS_MAP.get(raw_status, STATUS_PENDING)
        if raw_status == "requires_payment_method" and _field(intent, "last_payment_error"):
            status = STATUS_FAILED

        metadata = _as_dict(_field(intent, "metadata"))
        return PaymentVerification(
            reference=_field(intent, "id", reference),
            status=status,
            amount=from_minor_units(_field(intent, "amount_received") or _field(intent, "amount")),
            currency=(_field(intent, "currency") or "").upper() or None,
            subscription_id=parse_order_ref(metadata.get("subscription_id")),
            metadata=metadata,
            order_ref=metadata.get("order_ref"),
        )
