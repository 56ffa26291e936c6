from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from payments.base import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_REQUIRES_ACTION,
    STATUS_SUCCEEDED,
    HttpPaymentProvider,
    PaymentRequest,
    PaymentResult,
    PaymentVerification,
    PriceEstimate,
    parse_order_ref,
)
from services.exceptions import InvalidRequest

SUCCESS_STATUSES = ("finished",)
FAILURE_STATUSES = ("failed", "expired", "refunded")

_STATUS_MAP = {
    **{s: STATUS_SUCCEEDED for s in SUCCESS_STATUSES},
    **{s: STATUS_FAILED for s in FAILURE_STATUSES},
    "waiting": STATUS_REQUIRES_ACTION,
}

CURRENCY_NAMES = {
    "btc": "Bitcoin",
    "eth": "Ethereum",
    "usdt": "Tether",
    "ltc": "Litecoin",
    "trx": "TRON",
}


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


class NowPaymentsProvider(HttpPaymentProvider):
    """Crypto payments through NOWPayments. The API has no idempotency keys."""

    name = "nowpayments"
    supports_idempotency = False

    def __init__(self, api_key: str, base_url: str, timeout: float, ipn_callback_url: str = ""):
        super().__init__(api_key, base_url, timeout)
        self.ipn_callback_url = ipn_callback_url

    def _headers(self) -> Dict[str, str]:
        return {"x-api-key": self.credential, "Content-Type": "application/json"}

    def create_payment(self, request: PaymentRequest) -> PaymentResult:
        if not request.pay_currency:
            raise InvalidRequest("pay_currency is required for crypto payments", provider=self.name)

        # A retried call opens a second invoice; only the first one paid activates the subscription.
        self.logger.warning(
            "NOWPayments has no idempotency support, a retried create for %s may open a second invoice",
            request.order_ref,
        )
        payload = {
            "price_amount": float(request.amount),
            "price_currency": request.currency.lower(),
            "pay_currency": request.pay_currency.lower(),
            "order_id": request.order_ref,
            "order_description": request.description,
        }
        if self.ipn_callback_url:
            payload["ipn_callback_url"] = self.ipn_callback_url

        data = self._request("POST", "/payment", json=payload)
        payment_id = str(data.get("payment_id"))
        self.logger.info("NOWPayments payment %s created for %s", payment_id, request.order_ref)
        return PaymentResult(
            id=payment_id,
            status=_STATUS_MAP.get(data.get("payment_status"), STATUS_PENDING),
            provider_ref=request.order_ref,
            pay_address=data.get("pay_address"),
            pay_amount=_decimal(data.get("pay_amount")),
            pay_currency=data.get("pay_currency"),
        )

    def verify(self, reference: str) -> PaymentVerification:
        data = self._request("GET", f"/payment/{reference}")
        return PaymentVerification(
            reference=str(data.get("payment_id") or reference),
            status=_STATUS_MAP.get(data.get("payment_status"), STATUS_PENDING),
            amount=_decimal(data.get("price_amount")),
            currency=(data.get("price_currency") or "").upper() or None,
            subscription_id=parse_order_ref(data.get("order_id")),
            metadata={"payment_status": data.get("payment_status"), "order_id": data.get("order_id")},
            order_ref=data.get("order_id"),
        )

    def estimate(self, amount: Decimal, from_currency: str, to_currency: str) -> PriceEstimate:
        data = self._request(
            "GET",
            "/estimate",
            params={"amount": str(amount), "currency_from": from_currency.lower(), "currency_to": to_currency.lower()},
        )
        estimated = _decimal(data.get("estimated_amount"))
        if estimated is None:
            raise InvalidRequest("NOWPayments returned no estimate", provider=self.name)
        return PriceEstimate(
            amount_from=Decimal(str(amount)),
            currency_from=from_currency.lower(),
            currency_to=to_currency.lower(),
            estimated_amount=estimated,
        )

    def currencies(self) -> List[Dict[str, Any]]:
        data = self._request("GET", "/currencies")
        return [
            {"code": code.lower(), "name": CURRENCY_NAMES.get(code.lower(), code.upper()), "enabled": True}
            for code in data.get("currencies") or []
        ]

    def min_amount(self, from_currency: str, to_currency: str) -> Optional[Decimal]:
        data = self._request(
            "GET", "/min-amount", params={"currency_from": from_currency.lower(), "currency_to": to_currency.lower()}
        )
        return _decimal(data.get("min_amount"))
