from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

SubscriptionStatusLiteral = Literal["trialing", "active", "past_due", "cancelled", "expired"]
BillingCycleLiteral = Literal["monthly", "yearly"]
OutcomeLiteral = Literal["applied", "already_processed", "invalid_transition", "noop"]


class PlanOut(BaseModel):
    id: int
    name: str
    display_name: str
    description: Optional[str] = None
    price: Decimal
    currency: str
    billing_cycle: BillingCycleLiteral
    features: Dict[str, Any]
    is_active: bool

    class Config:
        from_attributes = True


class PlansOut(BaseModel):
    plans: List[PlanOut]


class SubscriptionOut(BaseModel):
    id: int
    status: SubscriptionStatusLiteral
    plan: PlanOut
    current_period_start: datetime
    current_period_end: datetime
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    has_access: bool


class MySubscriptionOut(BaseModel):
    subscription: Optional[SubscriptionOut]
    active_plan: Optional[PlanOut] = None


class CancelIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class TransitionOut(BaseModel):
    applied: bool
    outcome: OutcomeLiteral
    subscription: SubscriptionOut


class HistoryItemOut(BaseModel):
    id: int
    subscription_id: int
    action_type: str
    previous_plan_id: Optional[int] = None
    new_plan_id: Optional[int] = None
    payment_method: Optional[str] = None
    payment_amount: Optional[Decimal] = None
    payment_currency: Optional[str] = None
    payment_status: Optional[str] = None
    billing_cycle: Optional[str] = None
    transaction_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True


class HistoryOut(BaseModel):
    items: List[HistoryItemOut]


class BillingStatsOut(BaseModel):
    total_payments: int
    successful_payments: int
    failed_payments: int
    total_amount: Decimal
    average_amount: Decimal
    last_payment_date: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None


class InvoiceCustomerOut(BaseModel):
    name: str
    email: str


class InvoiceLineOut(BaseModel):
    description: str
    billing_cycle: Optional[str] = None
    amount: Decimal


class InvoiceOut(BaseModel):
    invoice_number: str
    transaction_id: str
    date: datetime
    bill_to: InvoiceCustomerOut
    lines: List[InvoiceLineOut]
    total: Decimal
    currency: Optional[str] = None
    payment_method: Optional[str] = None
    payment_status: Optional[str] = None
