from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from api.deps import get_db, get_current_user
from models.orm_plan import SubscriptionPlanEntity
from models.orm_subscription import UserSubscriptionEntity
from models.orm_user import UserEntity
from schemas.billing import (
    BillingStatsOut,
    CancelIn,
    HistoryItemOut,
    HistoryOut,
    InvoiceCustomerOut,
    InvoiceLineOut,
    InvoiceOut,
    MySubscriptionOut,
    PlanOut,
    PlansOut,
    SubscriptionOut,
    TransitionOut,
)
from services.billing_service import cancel_current
from services.exceptions import ConcurrentUpdate, SubscriptionNotFound, TransactionNotFound
from services.history_service import billing_stats, get_invoice, list_history
from services.plan_service import list_plans
from services.state_machine import has_access
from services.subscription_service import TransitionResult, _now_utc, get_active_plan, get_current_subscription

router = APIRouter(prefix="/billing", tags=["Billing"])


def plan_out(p: SubscriptionPlanEntity) -> PlanOut:
    return PlanOut(
        id=p.id,
        name=p.name,
        display_name=p.display_name,
        description=p.description,
        price=p.price,
        currency=p.currency,
        billing_cycle=p.billing_cycle,
        features=p.features or {},
        is_active=p.is_active,
    )


def subscription_out(sub: UserSubscriptionEntity) -> SubscriptionOut:
    return SubscriptionOut(
        id=sub.id,
        status=sub.status,
        plan=plan_out(sub.plan),
        current_period_start=sub.current_period_start,
        current_period_end=sub.current_period_end,
        cancelled_at=sub.cancelled_at,
        created_at=sub.created_at,
        has_access=has_access(sub, _now_utc()),
    )


def transition_out(result: TransitionResult) -> TransitionOut:
    return TransitionOut(
        applied=result.applied,
        outcome=result.outcome,
        subscription=subscription_out(result.subscription),
    )


@router.get("/plans", response_model=PlansOut)
def plans(db: Session = Depends(get_db)):
    return PlansOut(plans=[plan_out(p) for p in list_plans(db)])


@router.get("/subscription", response_model=MySubscriptionOut)
def my_subscription(user: UserEntity = Depends(get_current_user), db: Session = Depends(get_db)):
    sub = get_current_subscription(db, user.id)
    active_plan = get_active_plan(db, user.id)
    return MySubscriptionOut(
        subscription=subscription_out(sub) if sub else None,
        active_plan=plan_out(active_plan) if active_plan else None,
    )


@router.post("/subscription/cancel", response_model=TransitionOut)
def cancel_subscription(
    data: CancelIn,
    user: UserEntity = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        result = cancel_current(db, user.id, reason=data.reason)
    except SubscriptionNotFound:
        raise HTTPException(status_code=404, detail="No subscription to cancel")
    except ConcurrentUpdate:
        raise HTTPException(status_code=409, detail="Subscription changed concurrently, retry")
    if result.outcome == "invalid_transition":
        raise HTTPException(status_code=409, detail=f"Subscription is {result.subscription.status} and cannot be cancelled")
    return transition_out(result)


@router.get("/history", response_model=HistoryOut)
def history(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: UserEntity = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    rows = list_history(db, user_id=user.id, limit=limit, offset=offset)
    return HistoryOut(items=[HistoryItemOut.model_validate(r) for r in rows])


@router.get("/stats", response_model=BillingStatsOut)
def stats(user: UserEntity = Depends(get_current_user), db: Session = Depends(get_db)):
    s = billing_stats(db, user.id)
    return BillingStatsOut(
        total_payments=s.total_payments,
        successful_payments=s.successful_payments,
        failed_payments=s.failed_payments,
        total_amount=s.total_amount,
        average_amount=s.average_amount,
        last_payment_date=s.last_payment_date,
        next_billing_date=s.next_billing_date,
    )


@router.get("/invoice/{transaction_id:path}", response_model=InvoiceOut)
def invoice(transaction_id: str, user: UserEntity = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        row = get_invoice(db, user.id, transaction_id)
    except TransactionNotFound:
        raise HTTPException(status_code=404, detail="Transaction not found")

    plan = row.new_plan or row.subscription.plan
    amount = row.payment_amount if row.payment_amount is not None else Decimal("0")
    return InvoiceOut(
        invoice_number=row.transaction_id,
        transaction_id=row.transaction_id,
        date=row.created_at,
        bill_to=InvoiceCustomerOut(
            name=user.first_name or user.username,
            email=user.email,
        ),
        lines=[InvoiceLineOut(
            description=f"{plan.display_name} Subscription",
            billing_cycle=row.billing_cycle or plan.billing_cycle,
            amount=amount,
        )],
        total=amount,
        currency=row.payment_currency or plan.currency,
        payment_method=row.payment_method,
        payment_status=row.payment_status,
    )
