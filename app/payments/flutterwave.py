from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from payments.base import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_REQUIRES_ACTION,
    STATUS_SUCCEEDED,
    HttpPaymentProvider,
    PaymentRequest,
    PaymentResult,
    PaymentVerification,
    parse_order_ref,
)

CHARGE_TYPES = ("bank_transfer", "mobile_money_ghana")

_STATUS_MAP = {
    "successful": STATUS_SUCCEEDED,
    "failed": STATUS_FAILED,
    "cancelled": STATUS_FAILED,
    "pending": STATUS_PENDING,
}


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


class FlutterwaveProvider(HttpPaymentProvider):
    """Flutterwave v3: direct charges for transfers and mobile money, hosted checkout otherwise."""

    name = "flutterwave"
    supports_idempotency = True

    def __init__(self, secret_key: str, base_url: str, timeout: float, redirect_url: str = ""):
        super().__init__(secret_key, base_url, timeout)
        self.redirect_url = redirect_url

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credential}",
            "Content-Type": "application/json",
        }

    def create_payment(self, request: PaymentRequest) -> PaymentResult:
        # tx_ref is unique on Flutterwave's side, so a replayed key cannot charge twice
        payload: Dict[str, Any] = {
            "tx_ref": request.order_ref,
            "amount": str(request.amount),
            "currency": request.currency.upper(),
            "email": request.customer_email,
            "fullname": request.customer_name,
            "meta": dict(request.metadata),
        }
        if request.subscription_id is not None:
            payload["meta"]["subscription_id"] = request.subscription_id

        if request.payment_type in CHARGE_TYPES:
            if request.payment_type == "mobile_money_ghana":
                payload["network"] = request.metadata.get("network")
                payload["phone_number"] = request.metadata.get("phone_number")
            body = self._request("POST", "/v3/charges", params={"type": request.payment_type}, json=payload)
        else:
            payload["redirect_url"] = self.redirect_url
            payload["customer"] = {"email": request.customer_email, "name": request.customer_name}
            payload["customizations"] = {"title": request.description}
            body = self._request("POST", "/v3/payments", json=payload)

        data = body.get("data") or {}
        authorization = (body.get("meta") or {}).get("authorization") or {}

        status = _STATUS_MAP.get(data.get("status"), STATUS_PENDING)
        redirect = data.get("link") or authorization.get("redirect")
        if redirect or authorization:
            status = STATUS_REQUIRES_ACTION

        self.logger.info("Flutterwave payment opened for %s (%s)", request.order_ref, request.payment_type or "checkout")
        return PaymentResult(
            id=str(data.get("id") or request.order_ref),
            status=status,
            provider_ref=request.order_ref,
            redirect_url=redirect,
            instructions=authorization or None,
        )

    def verify(self, reference: str) -> PaymentVerification:
        body = self._request("GET", f"/v3/transactions/{reference}/verify")
        data = body.get("data") or {}
        meta = data.get("meta") or {}

        subscription_id = parse_order_ref(meta.get("subscription_id")) or parse_order_ref(data.get("tx_ref"))
        return PaymentVerification(
            reference=str(data.get("id") or reference),
            status=_STATUS_MAP.get(data.get("status"), STATUS_PENDING),
            amount=_decimal(data.get("amount")),
            currency=data.get("currency"),
            subscription_id=subscription_id,
            metadata={"tx_ref": data.get("tx_ref"), "flw_ref": data.get("flw_ref")},
            order_ref=data.get("tx_ref"),
        )
