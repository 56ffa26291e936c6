"""Shared contract for payment provider adapters."""
from __future__ import annotations

import logging
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import requests

from services.exceptions import InvalidRequest, PaymentDeclined, ProviderUnavailable

STATUS_PENDING = "pending"
STATUS_REQUIRES_ACTION = "requires_action"
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"

_ORDER_REF_RE = re.compile(r"^sub_(\d+)_([A-Za-z0-9\-]+)$")
_PENDING_REF_RE = re.compile(r"^chg_(\d+)_([A-Za-z0-9\-]+)$")


def new_idempotency_key() -> str:
    return uuid.uuid4().hex


def new_order_ref(subscription_id: int, idempotency_key: str) -> str:
    """Order reference sent to providers: ``sub_<subscription_id>_<key>``."""
    return f"sub_{subscription_id}_{idempotency_key}"


def parse_order_ref(ref: Optional[str]) -> Optional[int]:
    """Recover the subscription id from an order reference, or a bare id."""
    if ref is None:
        return None
    ref = str(ref).strip()
    if ref.isdigit():
        return int(ref)
    m = _ORDER_REF_RE.match(ref)
    return int(m.group(1)) if m else None


def new_pending_ref(pending_signup_id: int, idempotency_key: str) -> str:
    """Order reference for a plan that has no subscription yet: ``chg_<pending_signup_id>_<key>``."""
    return f"chg_{pending_signup_id}_{idempotency_key}"


def parse_pending_ref(ref: Optional[str]) -> Optional[int]:
    if ref is None:
        return None
    m = _PENDING_REF_RE.match(str(ref).strip())
    return int(m.group(1)) if m else None


@dataclass(frozen=True)
class PaymentRequest:
    subscription_id: Optional[int]
    amount: Decimal
    currency: str
    description: str
    idempotency_key: str
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    payment_type: Optional[str] = None
    pay_currency: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    pending_signup_id: Optional[int] = None

    @property
    def order_ref(self) -> str:
        if self.subscription_id is None:
            return new_pending_ref(self.pending_signup_id, self.idempotency_key)
        return new_order_ref(self.subscription_id, self.idempotency_key)


@dataclass(frozen=True)
class PaymentResult:
    id: str
    status: str
    provider_ref: Optional[str] = None
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    pay_address: Optional[str] = None
    pay_amount: Optional[Decimal] = None
    pay_currency: Optional[str] = None
    instructions: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class PaymentVerification:
    reference: str
    status: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    subscription_id: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    order_ref: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCEEDED


@dataclass(frozen=True)
class PriceEstimate:
    amount_from: Decimal
    currency_from: str
    currency_to: str
    estimated_amount: Decimal

    @property
    def rate(self) -> Decimal:
        if not self.amount_from:
            return Decimal("0")
        return self.estimated_amount / self.amount_from


class PaymentProvider(ABC):
    """Base class for payment providers.

    Adapters translate between the billing domain and one provider's API.
    They never retry and never touch the database: failures surface as
    ``PaymentProviderError`` subclasses and the caller decides what to do.
    """

    name = "base"
    supports_idempotency = True

    def __init__(self, timeout: float):
        self.timeout = timeout
        self.logger = logging.getLogger(f"payments.{self.name}")

    @abstractmethod
    def create_payment(self, request: PaymentRequest) -> PaymentResult:
        """Open a payment for ``request.amount``.

        Raises:
            ProviderUnavailable: network failure, timeout or 5xx
            InvalidRequest: the provider rejected the request
            PaymentDeclined: the charge was declined
        """
        pass

    @abstractmethod
    def verify(self, reference: str) -> PaymentVerification:
        """Fetch the current state of a payment from the provider."""
        pass

    def estimate(self, amount: Decimal, from_currency: str, to_currency: str) -> PriceEstimate:
        raise InvalidRequest(f"{self.name} does not provide price estimates", provider=self.name)


class HttpPaymentProvider(PaymentProvider):
    """Provider spoken to over a JSON REST API with ``requests``."""

    def __init__(self, credential: str, base_url: str, timeout: float):
        super().__init__(timeout)
        self.credential = credential
        self.base_url = base_url.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """One HTTP round trip, with failures mapped onto the provider error taxonomy."""
        if not self.credential:
            raise ProviderUnavailable(f"{self.name} is not configured", provider=self.name)

        url = f"{self.base_url}{path}"
        try:
            response = requests.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as e:
            self.logger.error("%s %s %s unreachable: %s", self.name, method, path, e)
            raise ProviderUnavailable(f"{self.name} is unreachable", provider=self.name) from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"data": data}

        if response.status_code >= 500:
            self.logger.error("%s %s %s returned %s", self.name, method, path, response.status_code)
            raise ProviderUnavailable(f"{self.name} returned {response.status_code}", provider=self.name)
        if response.status_code == 402:
            raise PaymentDeclined(data.get("message") or "Payment declined", provider=self.name)
        if response.status_code >= 400 or data.get("status") == "error":
            message = data.get("message") or f"{self.name} rejected the request ({response.status_code})"
            self.logger.error("%s %s %s rejected: %s", self.name, method, path, message)
            raise InvalidRequest(message, provider=self.name)
        return data
