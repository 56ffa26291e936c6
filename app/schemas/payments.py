from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

ProviderLiteral = Literal["stripe", "flutterwave", "nowpayments"]
OutcomeLiteral = Literal["applied", "already_processed", "invalid_transition", "noop"]


class CheckoutIn(BaseModel):
    provider: ProviderLiteral
    plan_id: Optional[int] = None
    payment_type: Optional[str] = Field(default=None, description="card, bank_transfer, mobile_money_ghana, crypto")
    pay_currency: Optional[str] = Field(default=None, description="Crypto ticker for NOWPayments, e.g. btc")
    phone_number: Optional[str] = None
    network: Optional[str] = None


class CheckoutOut(BaseModel):
    subscription_id: Optional[int] = None
    pending_signup_id: Optional[int] = None
    provider: ProviderLiteral
    payment_id: str
    status: str
    amount: Decimal
    currency: str
    idempotency_key: str
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    pay_address: Optional[str] = None
    pay_amount: Optional[Decimal] = None
    pay_currency: Optional[str] = None
    instructions: Optional[Dict[str, Any]] = None


class VerifyIn(BaseModel):
    provider: ProviderLiteral
    reference: str = Field(min_length=1, max_length=255)


class VerifyOut(BaseModel):
    reference: str
    status: str
    subscription_id: Optional[int] = None
    applied: bool = False
    outcome: Optional[OutcomeLiteral] = None


class EstimateOut(BaseModel):
    amount_from: Decimal
    currency_from: str
    currency_to: str
    estimated_amount: Decimal
    rate: Decimal


class CurrencyOut(BaseModel):
    code: str
    name: str
    enabled: bool


class CurrenciesOut(BaseModel):
    currencies: List[CurrencyOut]


class PaymentMethodIn(BaseModel):
    provider: ProviderLiteral
    payment_type: str = Field(min_length=2, max_length=30)
    account: Optional[str] = Field(default=None, max_length=64, description="Card number, phone or wallet; only the last 4 characters are kept")
    display_name: Optional[str] = Field(default=None, max_length=100)
    make_default: bool = False


class PaymentMethodOut(BaseModel):
    id: int
    provider: str
    payment_type: str
    display_name: Optional[str] = None
    masked_data: Optional[str] = None
    is_default: bool
    is_active: bool

    class Config:
        from_attributes = True


class PaymentMethodsOut(BaseModel):
    methods: List[PaymentMethodOut]
