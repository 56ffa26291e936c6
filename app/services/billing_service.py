"""Glue between payment providers and the subscription state machine."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from models.orm_pending_signup import PendingSignupEntity
from models.orm_plan import SubscriptionPlanEntity
from models.orm_subscription import UserSubscriptionEntity
from models.orm_user import UserEntity
from payments.base import (
    PaymentRequest,
    PaymentResult,
    PaymentVerification,
    new_idempotency_key,
    parse_order_ref,
    parse_pending_ref,
)
from payments.registry import get_provider
from services import subscription_service
from services.exceptions import InvalidRequest, SubscriptionNotFound
from services.plan_service import get_plan
from services.state_machine import is_terminal
from services.subscription_service import PaymentDetails, TransitionResult

logger = logging.getLogger(__name__)

EVENT_PAYMENT_SUCCESS = "payment.success"
EVENT_PAYMENT_FAILED = "payment.failed"

_IDEMPOTENCY_KEY_RE = re.compile(r"^[A-Za-z0-9\-]{8,64}$")


@dataclass(frozen=True)
class PaymentEvent:
    """Provider-neutral view of a payment notification."""

    type: str
    provider: str
    subscription_ref: Optional[str]
    external_txn_id: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    raw_type: Optional[str] = None
    gateway_reference: Optional[str] = None
    payment_method: Optional[str] = None

    @property
    def transaction_id(self) -> str:
        # failures get their own id so a later success for the same payment still applies
        if self.type == EVENT_PAYMENT_FAILED:
            return f"{self.provider}:{self.external_txn_id}:failed"
        return f"{self.provider}:{self.external_txn_id}"


@dataclass
class CheckoutResult:
    subscription: Optional[UserSubscriptionEntity]
    payment: PaymentResult
    idempotency_key: str
    provider: str
    amount: Decimal
    currency: str
    extra: Dict[str, Any] = field(default_factory=dict)
    pending_signup: Optional[PendingSignupEntity] = None


def _payment_details(event: PaymentEvent) -> PaymentDetails:
    return PaymentDetails(
        transaction_id=event.transaction_id,
        method=event.payment_method or event.provider,
        amount=event.amount,
        currency=event.currency.upper() if event.currency else None,
        gateway_reference=event.gateway_reference or event.external_txn_id,
        details={"provider": event.provider, "event": event.raw_type, "provider_status": event.status},
    )


def _warn_if_underpaid(event: PaymentEvent, plan: SubscriptionPlanEntity, ref: str) -> None:
    if event.amount is not None and plan.price is not None and Decimal(event.amount) < Decimal(plan.price):
        logger.warning(
            "%s: %s paid %s %s, plan %s costs %s %s",
            ref, event.provider, event.amount, event.currency, plan.name, plan.price, plan.currency,
        )


def _apply_to_pending_signup(db: Session, event: PaymentEvent, pending_signup_id: int) -> Optional[TransitionResult]:
    pending = subscription_service.load_pending_signup(db, pending_signup_id)

    if event.type == EVENT_PAYMENT_FAILED:
        # nothing to move to past_due: the user's current subscription was never billed for this plan
        logger.info(
            "Pending plan selection %s: %s payment %s failed, current subscription untouched",
            pending.id, event.provider, event.external_txn_id,
        )
        return None
    if event.type != EVENT_PAYMENT_SUCCESS:
        raise InvalidRequest(f"Unsupported payment event type '{event.type}'")

    _warn_if_underpaid(event, pending.plan, f"Pending plan selection {pending.id}")
    return subscription_service.activate_pending_signup(db, pending.id, payment=_payment_details(event))


def apply_payment_event(db: Session, event: PaymentEvent) -> Optional[TransitionResult]:
    """Apply a normalized payment event to its subscription.

    A ``chg_`` reference points at a plan picked at checkout: its first
    success opens the subscription, a failure changes nothing and returns None.
    Raises NotFound when the reference does not resolve.
    Duplicates and illegal transitions come back as non-applied results.
    """
    pending_signup_id = parse_pending_ref(event.subscription_ref)
    if pending_signup_id is not None:
        return _apply_to_pending_signup(db, event, pending_signup_id)

    sub_id = parse_order_ref(event.subscription_ref)
    if sub_id is None:
        raise SubscriptionNotFound(f"No subscription reference in {event.provider} event {event.external_txn_id}")
    sub = subscription_service.get_subscription(db, sub_id)
    payment = _payment_details(event)

    if event.type == EVENT_PAYMENT_SUCCESS:
        plan = sub.plan
        _warn_if_underpaid(event, plan, f"Subscription {sub.id}")
        return subscription_service.activate(
            db, sub.id, subscription_service.period_length_days(plan), payment=payment,
        )

    if event.type == EVENT_PAYMENT_FAILED:
        return subscription_service.mark_past_due(db, sub.id, payment=payment)

    raise InvalidRequest(f"Unsupported payment event type '{event.type}'")


def _check_idempotency_key(key: Optional[str]) -> str:
    if key is None:
        return new_idempotency_key()
    if not _IDEMPOTENCY_KEY_RE.match(key):
        raise InvalidRequest("Idempotency-Key must be 8-64 letters, digits or dashes")
    return key


def _open_pending_signup(db: Session, user_id: int, plan_id: int) -> PendingSignupEntity:
    """Reuse the user's unpaid selection of this plan, or record a new one."""
    pending = (
        db.query(PendingSignupEntity)
        .filter(
            PendingSignupEntity.user_id == user_id,
            PendingSignupEntity.plan_id == plan_id,
            PendingSignupEntity.subscription_id.is_(None),
            PendingSignupEntity.completed_at.is_(None),
        )
        .order_by(PendingSignupEntity.id.desc())
        .first()
    )
    if pending is None:
        pending = PendingSignupEntity(user_id=user_id, plan_id=plan_id)
        db.add(pending)
        db.commit()
        db.refresh(pending)
        logger.info("User %s selected plan %s, pending selection %s", user_id, plan_id, pending.id)
    return pending


def create_checkout(
    db: Session,
    user: UserEntity,
    provider_name: str,
    plan_id: Optional[int] = None,
    payment_type: Optional[str] = None,
    pay_currency: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> CheckoutResult:
    """Open a provider payment for a plan.

    Paying for the plan of the current open subscription renews that row.
    Any other plan is only recorded as a pending selection: no subscription
    row exists for it, and the current one keeps its access, until the first
    payment succeeds.
    """
    provider = get_provider(provider_name)
    key = _check_idempotency_key(idempotency_key)

    current = subscription_service.get_current_subscription(db, user.id)
    if plan_id is not None:
        plan = get_plan(db, plan_id, active_only=True)
    elif current is not None:
        plan = current.plan
    else:
        raise InvalidRequest("plan_id is required when there is no subscription to pay for")
    if plan.is_free:
        raise InvalidRequest("Free plans do not need a payment")

    sub = None
    pending = None
    if current is not None and not is_terminal(current.status) and current.plan_id == plan.id:
        sub = current
    else:
        pending = _open_pending_signup(db, user.id, plan.id)

    request = PaymentRequest(
        subscription_id=sub.id if sub else None,
        pending_signup_id=pending.id if pending else None,
        amount=Decimal(plan.price),
        currency=plan.currency,
        description=f"{plan.display_name} subscription ({plan.billing_cycle})",
        idempotency_key=key,
        customer_email=user.email,
        customer_name=user.first_name or user.username,
        payment_type=payment_type,
        pay_currency=pay_currency,
        metadata=dict(metadata or {}),
    )
    result = provider.create_payment(request)
    logger.info(
        "Checkout for user %s: %s via %s, payment %s (%s)",
        user.id, request.order_ref, provider.name, result.id, result.status,
    )
    return CheckoutResult(
        subscription=sub,
        payment=result,
        idempotency_key=key,
        provider=provider.name,
        amount=request.amount,
        currency=request.currency,
        pending_signup=pending,
    )


def _payment_owner(db: Session, verification: PaymentVerification, reference: str, provider: str) -> tuple[int, str]:
    """Resolve the user a verified payment belongs to, and the reference to apply it with."""
    if verification.subscription_id is not None:
        sub = subscription_service.get_subscription(db, verification.subscription_id)
        return sub.user_id, str(sub.id)

    pending_signup_id = parse_pending_ref(verification.order_ref)
    if pending_signup_id is not None:
        pending = subscription_service.load_pending_signup(db, pending_signup_id)
        return pending.user_id, verification.order_ref

    raise SubscriptionNotFound(f"{provider} payment {reference} is not linked to a subscription")


def verify_payment(
    db: Session,
    user: UserEntity,
    provider_name: str,
    reference: str,
) -> tuple[PaymentVerification, Optional[TransitionResult]]:
    """Ask the provider about a payment and apply the outcome if it is final."""
    provider = get_provider(provider_name)
    verification = provider.verify(reference)

    owner_id, ref = _payment_owner(db, verification, reference, provider.name)
    if owner_id != user.id:
        raise SubscriptionNotFound(f"{provider.name} payment {reference} not found")

    if verification.succeeded:
        event_type = EVENT_PAYMENT_SUCCESS
    elif verification.status == "failed":
        event_type = EVENT_PAYMENT_FAILED
    else:
        logger.info("%s payment %s still %s", provider.name, reference, verification.status)
        return verification, None

    result = apply_payment_event(db, PaymentEvent(
        type=event_type,
        provider=provider.name,
        subscription_ref=ref,
        external_txn_id=verification.reference,
        amount=verification.amount,
        currency=verification.currency,
        status=verification.status,
        raw_type="verify",
    ))
    return verification, result


def cancel_current(db: Session, user_id: int, reason: Optional[str] = None) -> TransitionResult:
    sub = subscription_service.get_current_subscription(db, user_id)
    if sub is None:
        raise SubscriptionNotFound("No subscription to cancel")
    return subscription_service.cancel(db, sub.id, reason=reason)
