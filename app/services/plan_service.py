from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from models.enums import BillingCycle
from models.orm_pending_signup import PendingSignupEntity
from models.orm_plan import SubscriptionPlanEntity
from models.orm_subscription import UserSubscriptionEntity
from models.orm_subscription_history import UserSubscriptionHistoryEntity
from services.exceptions import InvalidRequest, PlanNotFound
from services.subscription_service import FREE_PLAN_NAME

logger = logging.getLogger(__name__)

FREE_PLAN_DEFAULTS = {
    "display_name": "Free",
    "description": "Get started with trading",
    "features": {
        "features": [
            "Basic trading introduction",
            "Limited course access (3 courses)",
            "Community forum access",
            "Email support",
        ],
        "max_courses": 3,
        "live_sessions_per_month": 0,
        "one_on_one_sessions": 0,
        "priority_support": False,
    },
}

EDITABLE_FIELDS = ("display_name", "description", "price", "currency", "billing_cycle", "features", "is_active")


def list_plans(db: Session, include_inactive: bool = False) -> list[SubscriptionPlanEntity]:
    q = db.query(SubscriptionPlanEntity)
    if not include_inactive:
        q = q.filter(SubscriptionPlanEntity.is_active.is_(True))
    return q.order_by(SubscriptionPlanEntity.price.asc(), SubscriptionPlanEntity.id.asc()).all()


def get_plan(db: Session, plan_id: int, active_only: bool = False) -> SubscriptionPlanEntity:
    q = db.query(SubscriptionPlanEntity).filter(SubscriptionPlanEntity.id == plan_id)
    if active_only:
        q = q.filter(SubscriptionPlanEntity.is_active.is_(True))
    plan = q.first()
    if not plan:
        raise PlanNotFound(f"Plan {plan_id} not found")
    return plan


def get_plan_by_name(db: Session, name: str) -> SubscriptionPlanEntity:
    plan = (
        db.query(SubscriptionPlanEntity)
        .filter(SubscriptionPlanEntity.name == name, SubscriptionPlanEntity.is_active.is_(True))
        .first()
    )
    if not plan:
        raise PlanNotFound(f"Plan '{name}' not found")
    return plan


def _check_cycle(value: str) -> None:
    if value not in {c.value for c in BillingCycle}:
        raise InvalidRequest(f"Unsupported billing cycle '{value}'")


def create_plan(db: Session, **fields) -> SubscriptionPlanEntity:
    if db.query(SubscriptionPlanEntity).filter(SubscriptionPlanEntity.name == fields["name"]).first():
        raise InvalidRequest(f"Plan '{fields['name']}' already exists")
    _check_cycle(fields.get("billing_cycle", BillingCycle.MONTHLY.value))
    if Decimal(fields.get("price", 0)) < 0:
        raise InvalidRequest("Plan price cannot be negative")

    plan = SubscriptionPlanEntity(**fields)
    db.add(plan)
    db.commit()
    db.refresh(plan)
    logger.info("Plan %s (%s) created", plan.id, plan.name)
    return plan


def update_plan(db: Session, plan_id: int, **changes) -> SubscriptionPlanEntity:
    plan = get_plan(db, plan_id)
    if "billing_cycle" in changes and changes["billing_cycle"] is not None:
        _check_cycle(changes["billing_cycle"])
    if changes.get("price") is not None and Decimal(changes["price"]) < 0:
        raise InvalidRequest("Plan price cannot be negative")

    for key in EDITABLE_FIELDS:
        if changes.get(key) is not None:
            setattr(plan, key, changes[key])
    db.commit()
    db.refresh(plan)
    logger.info("Plan %s updated: %s", plan.id, sorted(k for k, v in changes.items() if v is not None))
    return plan


def delete_plan(db: Session, plan_id: int) -> bool:
    """Remove a plan. Returns False when it was only deactivated.

    Plans referenced by subscriptions, pending selections or history stay in
    place so those rows keep pointing at a real plan; they are hidden from the
    catalogue instead.
    """
    plan = get_plan(db, plan_id)
    references = (
        db.query(UserSubscriptionEntity.id).filter(UserSubscriptionEntity.plan_id == plan.id),
        db.query(PendingSignupEntity.id).filter(PendingSignupEntity.plan_id == plan.id),
        db.query(UserSubscriptionHistoryEntity.id).filter(
            (UserSubscriptionHistoryEntity.previous_plan_id == plan.id)
            | (UserSubscriptionHistoryEntity.new_plan_id == plan.id)
        ),
    )
    in_use = any(q.first() is not None for q in references)
    if in_use:
        plan.is_active = False
        db.commit()
        logger.info("Plan %s is still referenced, deactivated instead of deleted", plan.id)
        return False

    db.delete(plan)
    db.commit()
    logger.info("Plan %s deleted", plan_id)
    return True


def ensure_free_plan(db: Session, currency: str = "USD") -> tuple[SubscriptionPlanEntity, bool]:
    plan = db.query(SubscriptionPlanEntity).filter(SubscriptionPlanEntity.name == FREE_PLAN_NAME).first()
    if plan:
        if not plan.is_active or Decimal(plan.price) != 0:
            plan.is_active = True
            plan.price = Decimal("0")
            db.commit()
            db.refresh(plan)
            logger.info("Free plan %s repaired", plan.id)
        return plan, False

    plan = SubscriptionPlanEntity(
        name=FREE_PLAN_NAME,
        price=Decimal("0"),
        currency=currency,
        billing_cycle=BillingCycle.MONTHLY.value,
        is_active=True,
        **FREE_PLAN_DEFAULTS,
    )
    db.add(plan)
    db.commit()
    db.refresh(plan)
    logger.info("Free plan created with id %s", plan.id)
    return plan, True
