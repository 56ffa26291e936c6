from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from core.settings import settings
from models.enums import HistoryAction, SubscriptionStatus
from models.orm_pending_signup import PendingSignupEntity
from models.orm_plan import SubscriptionPlanEntity
from models.orm_subscription import UserSubscriptionEntity
from services.subscription_service import (
    FREE_PLAN_PERIOD_DAYS,
    PaymentDetails,
    _now_utc,
    build_history_row,
    get_current_subscription,
    plan_change_action,
)

logger = logging.getLogger(__name__)


def start_subscription(
    db: Session,
    user_id: int,
    plan: SubscriptionPlanEntity,
    now: datetime | None = None,
) -> UserSubscriptionEntity:
    """Open a new subscription for a plan picked at signup or at checkout.

    A free plan is active straight away. A paid plan starts as ``trialing``
    and becomes active when its first payment is confirmed.
    """
    now = now or _now_utc()
    previous = get_current_subscription(db, user_id)
    previous_plan = previous.plan if previous else None

    if plan.is_free:
        sub = UserSubscriptionEntity(
            user_id=user_id,
            plan_id=plan.id,
            status=SubscriptionStatus.ACTIVE.value,
            current_period_start=now,
            current_period_end=now + timedelta(days=FREE_PLAN_PERIOD_DAYS),
            created_at=now,
        )
    else:
        sub = UserSubscriptionEntity(
            user_id=user_id,
            plan_id=plan.id,
            status=SubscriptionStatus.TRIALING.value,
            current_period_start=now,
            current_period_end=now + timedelta(days=settings.trial_days),
            created_at=now,
        )
    sub.plan = plan
    db.add(sub)
    db.flush()

    if plan.is_free:
        db.add(build_history_row(
            sub,
            HistoryAction.PAYMENT,
            previous_plan_id=previous_plan.id if previous_plan else None,
            new_plan_id=plan.id,
            payment=PaymentDetails(method="free", amount=Decimal("0"), currency=plan.currency),
        ))
    else:
        db.add(build_history_row(
            sub,
            plan_change_action(previous_plan, plan),
            previous_plan_id=previous_plan.id if previous_plan else None,
            new_plan_id=plan.id,
        ))
        db.add(PendingSignupEntity(user_id=user_id, plan_id=plan.id, subscription_id=sub.id))

    db.commit()
    db.refresh(sub)
    logger.info("User %s started subscription %s on plan %s (%s)", user_id, sub.id, plan.name, sub.status)
    return sub


def get_pending_signup(db: Session, user_id: int) -> PendingSignupEntity | None:
    return (
        db.query(PendingSignupEntity)
        .filter(PendingSignupEntity.user_id == user_id, PendingSignupEntity.completed_at.is_(None))
        .order_by(PendingSignupEntity.id.desc())
        .first()
    )
