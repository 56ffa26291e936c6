import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from api.billing import plan_out, subscription_out, transition_out
from api.deps import get_db, require_admin
from core.settings import settings
from models.enums import SubscriptionStatus
from models.orm_subscription import UserSubscriptionEntity
from models.orm_user import UserEntity
from schemas.admin import (
    AdminActivateIn,
    AdminCancelIn,
    AdminPlansOut,
    AdminSubscriptionOut,
    AdminSubscriptionsOut,
    DiscordSettingsIn,
    DiscordSettingsOut,
    FreePlanOut,
    ManualSubscriptionIn,
    PlanDeleteOut,
    PlanIn,
    PlanUpdateIn,
)
from schemas.billing import PlanOut, TransitionOut
from services import plan_service, subscription_service
from services.exceptions import ConcurrentUpdate, InvalidRequest, NotFound
from services.settings_store import get_discord_settings, update_discord_settings
from services.subscription_service import PaymentDetails

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


def _admin_subscription_out(sub: UserSubscriptionEntity) -> AdminSubscriptionOut:
    return AdminSubscriptionOut(user_id=sub.user_id, **subscription_out(sub).model_dump())


@router.get("/plans", response_model=AdminPlansOut)
def admin_plans(db: Session = Depends(get_db), _: UserEntity = Depends(require_admin)):
    return AdminPlansOut(plans=[plan_out(p) for p in plan_service.list_plans(db, include_inactive=True)])


@router.post("/plans", response_model=PlanOut, status_code=201)
def admin_create_plan(data: PlanIn, db: Session = Depends(get_db), _: UserEntity = Depends(require_admin)):
    try:
        plan = plan_service.create_plan(db, **data.model_dump())
    except InvalidRequest as e:
        raise HTTPException(status_code=400, detail=str(e))
    return plan_out(plan)


@router.put("/plans/{plan_id}", response_model=PlanOut)
def admin_update_plan(
    plan_id: int,
    data: PlanUpdateIn,
    db: Session = Depends(get_db),
    _: UserEntity = Depends(require_admin),
):
    try:
        plan = plan_service.update_plan(db, plan_id, **data.model_dump(exclude_unset=True))
    except NotFound:
        raise HTTPException(status_code=404, detail="Plan not found")
    except InvalidRequest as e:
        raise HTTPException(status_code=400, detail=str(e))
    return plan_out(plan)


@router.delete("/plans/{plan_id}", response_model=PlanDeleteOut)
def admin_delete_plan(plan_id: int, db: Session = Depends(get_db), _: UserEntity = Depends(require_admin)):
    try:
        deleted = plan_service.delete_plan(db, plan_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Plan not found")
    return PlanDeleteOut(id=plan_id, deleted=deleted, deactivated=not deleted)


@router.post("/plans/free", response_model=FreePlanOut)
def admin_ensure_free_plan(db: Session = Depends(get_db), _: UserEntity = Depends(require_admin)):
    plan, created = plan_service.ensure_free_plan(db, currency=settings.billing_currency)
    return FreePlanOut(created=created, plan=plan_out(plan))


@router.get("/subscriptions", response_model=AdminSubscriptionsOut)
def admin_subscriptions(
    status: Optional[SubscriptionStatus] = None,
    user_id: Optional[int] = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    _: UserEntity = Depends(require_admin),
):
    q = db.query(UserSubscriptionEntity)
    if status is not None:
        q = q.filter(UserSubscriptionEntity.status == status.value)
    if user_id is not None:
        q = q.filter(UserSubscriptionEntity.user_id == user_id)
    rows = (
        q.order_by(UserSubscriptionEntity.created_at.desc(), UserSubscriptionEntity.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return AdminSubscriptionsOut(subscriptions=[_admin_subscription_out(s) for s in rows])


@router.post("/subscriptions", response_model=AdminSubscriptionOut, status_code=201)
def admin_create_subscription(
    data: ManualSubscriptionIn,
    db: Session = Depends(get_db),
    admin: UserEntity = Depends(require_admin),
):
    user = db.query(UserEntity).filter(UserEntity.id == data.user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    try:
        plan = plan_service.get_plan(db, data.plan_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Plan not found")

    try:
        sub = subscription_service.create_manual_subscription(db, user.id, plan, period_days=data.period_days)
    except ConcurrentUpdate:
        raise HTTPException(status_code=409, detail="Subscriptions changed concurrently, retry")
    logger.info("Admin %s created subscription %s for user %s", admin.id, sub.id, user.id)
    return _admin_subscription_out(sub)


@router.post("/subscriptions/{subscription_id}/cancel", response_model=TransitionOut)
def admin_cancel_subscription(
    subscription_id: int,
    data: AdminCancelIn,
    db: Session = Depends(get_db),
    admin: UserEntity = Depends(require_admin),
):
    try:
        result = subscription_service.cancel(db, subscription_id, reason=data.reason or f"cancelled by admin {admin.id}")
    except NotFound:
        raise HTTPException(status_code=404, detail="Subscription not found")
    except ConcurrentUpdate:
        raise HTTPException(status_code=409, detail="Subscription changed concurrently, retry")
    if result.outcome == "invalid_transition":
        raise HTTPException(status_code=409, detail=f"Subscription is {result.subscription.status} and cannot be cancelled")
    return transition_out(result)


@router.post("/subscriptions/{subscription_id}/activate", response_model=TransitionOut)
def admin_activate_subscription(
    subscription_id: int,
    data: AdminActivateIn,
    db: Session = Depends(get_db),
    admin: UserEntity = Depends(require_admin),
):
    try:
        sub = subscription_service.get_subscription(db, subscription_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Subscription not found")

    payment = PaymentDetails(
        transaction_id=f"manual:{data.reference}" if data.reference else None,
        method="manual",
        amount=sub.plan.price,
        currency=sub.plan.currency,
        gateway_reference=data.reference,
        details={"activated_by": admin.id},
    )
    try:
        result = subscription_service.activate(
            db,
            subscription_id,
            data.period_days or subscription_service.period_length_days(sub.plan),
            payment=payment,
        )
    except ConcurrentUpdate:
        raise HTTPException(status_code=409, detail="Subscription changed concurrently, retry")
    if result.outcome == "invalid_transition":
        raise HTTPException(
            status_code=409,
            detail=f"Subscription is {result.subscription.status}; create a new subscription instead",
        )
    return transition_out(result)


@router.get("/settings/discord", response_model=DiscordSettingsOut)
def admin_discord_settings(db: Session = Depends(get_db), _: UserEntity = Depends(require_admin)):
    return DiscordSettingsOut(**get_discord_settings(db))


@router.put("/settings/discord", response_model=DiscordSettingsOut)
def admin_update_discord_settings(
    data: DiscordSettingsIn,
    db: Session = Depends(get_db),
    _: UserEntity = Depends(require_admin),
):
    return DiscordSettingsOut(**update_discord_settings(db, data.model_dump(exclude_unset=True)))
