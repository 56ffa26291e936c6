from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from schemas.billing import BillingCycleLiteral, PlanOut, SubscriptionOut


class PlanIn(BaseModel):
    name: str = Field(min_length=2, max_length=50, pattern=r"^[a-z0-9_\-]+$")
    display_name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    billing_cycle: BillingCycleLiteral = "monthly"
    features: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


class PlanUpdateIn(BaseModel):
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    billing_cycle: Optional[BillingCycleLiteral] = None
    features: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


class AdminPlansOut(BaseModel):
    plans: List[PlanOut]


class PlanDeleteOut(BaseModel):
    id: int
    deleted: bool
    deactivated: bool


class FreePlanOut(BaseModel):
    created: bool
    plan: PlanOut


class ManualSubscriptionIn(BaseModel):
    user_id: int
    plan_id: int
    period_days: Optional[int] = Field(default=None, gt=0, le=3660)


class AdminCancelIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class AdminActivateIn(BaseModel):
    period_days: Optional[int] = Field(default=None, gt=0, le=3660)
    reference: Optional[str] = Field(default=None, max_length=255, description="Offline payment reference, used as the transaction id")


class AdminSubscriptionOut(SubscriptionOut):
    user_id: int


class AdminSubscriptionsOut(BaseModel):
    subscriptions: List[AdminSubscriptionOut]


class DiscordSettingsOut(BaseModel):
    server_url: str
    server_name: str
    invite_code: str
    is_active: bool


class DiscordSettingsIn(BaseModel):
    server_url: Optional[str] = Field(default=None, max_length=255)
    server_name: Optional[str] = Field(default=None, max_length=100)
    invite_code: Optional[str] = Field(default=None, max_length=100)
    is_active: Optional[bool] = None
