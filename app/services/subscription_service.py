from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.base_classes import utcnow
from core.settings import settings
from models.enums import BillingCycle, HistoryAction, PaymentStatus, SubscriptionStatus
from models.orm_pending_signup import PendingSignupEntity
from models.orm_plan import SubscriptionPlanEntity
from models.orm_subscription import UserSubscriptionEntity
from models.orm_subscription_history import UserSubscriptionHistoryEntity
from services.exceptions import (
    AlreadyProcessed,
    ConcurrentUpdate,
    InvalidTransition,
    PendingSignupNotFound,
    SubscriptionNotFound,
)
from services.state_machine import check_transition, has_access

logger = logging.getLogger(__name__)

S = SubscriptionStatus

FREE_PLAN_NAME = "free"
FREE_PLAN_PERIOD_DAYS = 365
PERIOD_DAYS = {
    BillingCycle.MONTHLY.value: 30,
    BillingCycle.YEARLY.value: 365,
}
MAX_CAS_ATTEMPTS = 3

OPEN_STATUSES = (S.TRIALING.value, S.ACTIVE.value, S.PAST_DUE.value)

APPLIED = "applied"
ALREADY_PROCESSED = "already_processed"
INVALID_TRANSITION = "invalid_transition"
NOOP = "noop"


@dataclass(frozen=True)
class PaymentDetails:
    transaction_id: str | None = None
    method: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    status: str = PaymentStatus.COMPLETED.value
    gateway_reference: str | None = None
    details: dict = field(default_factory=dict)


@dataclass
class TransitionResult:
    subscription: UserSubscriptionEntity
    applied: bool
    outcome: str


def _now_utc() -> datetime:
    return utcnow()


def period_length_days(plan: SubscriptionPlanEntity) -> int:
    return PERIOD_DAYS.get(plan.billing_cycle, PERIOD_DAYS[BillingCycle.MONTHLY.value])


def get_subscription(db: Session, subscription_id: int) -> UserSubscriptionEntity:
    sub = db.query(UserSubscriptionEntity).filter(UserSubscriptionEntity.id == subscription_id).first()
    if not sub:
        raise SubscriptionNotFound(f"Subscription {subscription_id} not found")
    return sub


def get_current_subscription(db: Session, user_id: int) -> UserSubscriptionEntity | None:
    return (
        db.query(UserSubscriptionEntity)
        .filter(UserSubscriptionEntity.user_id == user_id)
        .order_by(UserSubscriptionEntity.created_at.desc(), UserSubscriptionEntity.id.desc())
        .first()
    )


def get_free_plan(db: Session) -> SubscriptionPlanEntity | None:
    return (
        db.query(SubscriptionPlanEntity)
        .filter(SubscriptionPlanEntity.name == FREE_PLAN_NAME, SubscriptionPlanEntity.is_active.is_(True))
        .first()
    )


def get_active_plan(db: Session, user_id: int, now: datetime | None = None) -> SubscriptionPlanEntity | None:
    sub = get_current_subscription(db, user_id)
    if sub and has_access(sub, now or _now_utc()):
        return sub.plan
    return get_free_plan(db)


def transaction_exists(db: Session, transaction_id: str) -> bool:
    return (
        db.query(UserSubscriptionHistoryEntity.id)
        .filter(UserSubscriptionHistoryEntity.transaction_id == transaction_id)
        .first()
        is not None
    )


def build_history_row(
    sub: UserSubscriptionEntity,
    action: HistoryAction,
    *,
    previous_plan_id: int | None,
    new_plan_id: int | None,
    payment: PaymentDetails | None = None,
    details: dict | None = None,
) -> UserSubscriptionHistoryEntity:
    row = UserSubscriptionHistoryEntity(
        user_id=sub.user_id,
        subscription_id=sub.id,
        action_type=action.value,
        previous_plan_id=previous_plan_id,
        new_plan_id=new_plan_id,
        billing_cycle=sub.plan.billing_cycle if sub.plan else None,
        details=details or None,
    )
    if payment:
        row.payment_method = payment.method
        row.payment_amount = payment.amount
        row.payment_currency = payment.currency
        row.payment_status = payment.status
        row.transaction_id = payment.transaction_id
        row.gateway_reference = payment.gateway_reference
        if payment.details:
            row.details = {**(row.details or {}), **payment.details}
    return row


@dataclass(frozen=True)
class _Observed:
    status: str
    current_period_end: datetime


def _observe(sub: UserSubscriptionEntity) -> _Observed:
    return _Observed(sub.status, sub.current_period_end)


def _compare_and_swap(db: Session, subscription_id: int, observed: _Observed, values: dict) -> bool:
    """Apply ``values`` only if the row still has the status and period we read."""
    updated = (
        db.query(UserSubscriptionEntity)
        .filter(
            UserSubscriptionEntity.id == subscription_id,
            UserSubscriptionEntity.status == observed.status,
            UserSubscriptionEntity.current_period_end == observed.current_period_end,
        )
        .update(values, synchronize_session=False)
    )
    return updated == 1


def _commit(db: Session, transaction_id: str | None) -> bool:
    """Commit; False when a concurrent writer already recorded ``transaction_id``."""
    try:
        db.commit()
        return True
    except IntegrityError:
        db.rollback()
        if transaction_id and transaction_exists(db, transaction_id):
            return False
        raise


def _already_processed(db: Session, subscription_id: int, exc: AlreadyProcessed) -> TransitionResult:
    logger.info("Subscription %s: %s, skipping", subscription_id, exc)
    return TransitionResult(get_subscription(db, subscription_id), False, ALREADY_PROCESSED)


def _rejected(sub: UserSubscriptionEntity, exc: InvalidTransition) -> TransitionResult:
    logger.warning("Subscription %s: %s", sub.id, exc)
    return TransitionResult(sub, False, INVALID_TRANSITION)


def _noop(sub: UserSubscriptionEntity, why: str) -> TransitionResult:
    logger.info("Subscription %s: %s, nothing to do", sub.id, why)
    return TransitionResult(sub, False, NOOP)


def _complete_pending_signup(db: Session, sub: UserSubscriptionEntity, now: datetime) -> None:
    (
        db.query(PendingSignupEntity)
        .filter(PendingSignupEntity.subscription_id == sub.id, PendingSignupEntity.completed_at.is_(None))
        .update({PendingSignupEntity.completed_at: now}, synchronize_session=False)
    )


def plan_change_action(previous: SubscriptionPlanEntity | None, plan: SubscriptionPlanEntity) -> HistoryAction:
    if previous is not None and Decimal(previous.price or 0) > Decimal(plan.price or 0):
        return HistoryAction.DOWNGRADE
    return HistoryAction.UPGRADE


def _supersede_open_subscriptions(db: Session, new_sub: UserSubscriptionEntity, now: datetime) -> bool:
    """Cancel every other open subscription of the user in the caller's transaction.

    Returns False when one of them changed under us; the caller rolls back and retries.
    """
    superseded = (
        db.query(UserSubscriptionEntity)
        .filter(
            UserSubscriptionEntity.user_id == new_sub.user_id,
            UserSubscriptionEntity.id != new_sub.id,
            UserSubscriptionEntity.status.in_(OPEN_STATUSES),
        )
        .all()
    )
    for old in superseded:
        observed = _observe(old)
        check_transition(old.status, S.CANCELLED)
        values = {
            UserSubscriptionEntity.status: S.CANCELLED.value,
            UserSubscriptionEntity.cancelled_at: now,
        }
        if not _compare_and_swap(db, old.id, observed, values):
            return False
        db.add(build_history_row(
            old,
            HistoryAction.CANCELLATION,
            previous_plan_id=old.plan_id,
            new_plan_id=new_sub.plan_id,
            details={"reason": "superseded", "previous_status": observed.status, "superseded_by": new_sub.id},
        ))
        _complete_pending_signup(db, old, now)
        logger.info("Subscription %s superseded by %s (was %s)", old.id, new_sub.id, observed.status)
    return True


def load_pending_signup(db: Session, pending_signup_id: int) -> PendingSignupEntity:
    pending = db.query(PendingSignupEntity).filter(PendingSignupEntity.id == pending_signup_id).first()
    if not pending:
        raise PendingSignupNotFound(f"Pending plan selection {pending_signup_id} not found")
    return pending


def activate(
    db: Session,
    subscription_id: int,
    period_length_days: int,
    payment: PaymentDetails | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    """Start a fresh paid period of ``period_length_days`` from now."""
    now = now or _now_utc()
    txn_id = payment.transaction_id if payment else None

    for _ in range(MAX_CAS_ATTEMPTS):
        sub = get_subscription(db, subscription_id)
        observed = _observe(sub)
        try:
            if txn_id and transaction_exists(db, txn_id):
                raise AlreadyProcessed(txn_id)
            check_transition(sub.status, S.ACTIVE)
        except AlreadyProcessed as e:
            return _already_processed(db, subscription_id, e)
        except InvalidTransition as e:
            return _rejected(sub, e)

        values = {
            UserSubscriptionEntity.status: S.ACTIVE.value,
            UserSubscriptionEntity.current_period_start: now,
            UserSubscriptionEntity.current_period_end: now + timedelta(days=period_length_days),
            UserSubscriptionEntity.reminder_sent_for: None,
        }
        if not _compare_and_swap(db, sub.id, observed, values):
            db.rollback()
            continue

        action = HistoryAction.PAYMENT if observed.status == S.TRIALING.value else HistoryAction.RENEWAL
        db.add(build_history_row(sub, action, previous_plan_id=sub.plan_id, new_plan_id=sub.plan_id, payment=payment))
        _complete_pending_signup(db, sub, now)

        if not _commit(db, txn_id):
            return _already_processed(db, subscription_id, AlreadyProcessed(txn_id))

        db.refresh(sub)
        logger.info(
            "Subscription %s activated (%s -> active) until %s, txn=%s",
            sub.id, observed.status, sub.current_period_end.isoformat(), txn_id,
        )
        return TransitionResult(sub, True, APPLIED)

    raise ConcurrentUpdate(f"Subscription {subscription_id} changed concurrently, activation not applied")


def activate_pending_signup(
    db: Session,
    pending_signup_id: int,
    payment: PaymentDetails | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    """First payment for a plan picked at checkout.

    The new subscription only exists from here on: it is created active and
    every other open subscription of the user is cancelled in the same
    transaction, so the user keeps the old plan until the payment lands.
    """
    now = now or _now_utc()
    txn_id = payment.transaction_id if payment else None

    for _ in range(MAX_CAS_ATTEMPTS):
        pending = load_pending_signup(db, pending_signup_id)
        if pending.subscription_id is not None:
            # already turned into a subscription, so this is a renewal or a replay
            return activate(
                db, pending.subscription_id, period_length_days(pending.plan), payment=payment, now=now,
            )
        if txn_id and transaction_exists(db, txn_id):
            logger.info("Pending plan selection %s: %s already recorded, skipping", pending.id, txn_id)
            return TransitionResult(get_current_subscription(db, pending.user_id), False, ALREADY_PROCESSED)

        plan = pending.plan
        previous = get_current_subscription(db, pending.user_id)

        sub = UserSubscriptionEntity(
            user_id=pending.user_id,
            plan_id=plan.id,
            status=S.ACTIVE.value,
            current_period_start=now,
            current_period_end=now + timedelta(days=period_length_days(plan)),
            created_at=now,
        )
        sub.plan = plan
        db.add(sub)
        db.flush()

        claimed = (
            db.query(PendingSignupEntity)
            .filter(PendingSignupEntity.id == pending.id, PendingSignupEntity.subscription_id.is_(None))
            .update(
                {PendingSignupEntity.subscription_id: sub.id, PendingSignupEntity.completed_at: now},
                synchronize_session=False,
            )
        )
        if claimed != 1 or not _supersede_open_subscriptions(db, sub, now):
            db.rollback()
            continue

        if previous is None:
            action = HistoryAction.PAYMENT
        else:
            action = plan_change_action(previous.plan, plan)
        db.add(build_history_row(
            sub,
            action,
            previous_plan_id=previous.plan_id if previous else None,
            new_plan_id=plan.id,
            payment=payment,
        ))

        user_id = pending.user_id
        if not _commit(db, txn_id):
            logger.info("Pending plan selection %s: %s already recorded, skipping", pending_signup_id, txn_id)
            return TransitionResult(get_current_subscription(db, user_id), False, ALREADY_PROCESSED)

        db.refresh(sub)
        logger.info(
            "Subscription %s opened on plan %s from pending selection %s until %s, txn=%s",
            sub.id, plan.name, pending_signup_id, sub.current_period_end.isoformat(), txn_id,
        )
        return TransitionResult(sub, True, APPLIED)

    raise ConcurrentUpdate(f"Pending plan selection {pending_signup_id} changed concurrently, activation not applied")


def mark_past_due(
    db: Session,
    subscription_id: int,
    payment: PaymentDetails | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    txn_id = payment.transaction_id if payment else None

    for _ in range(MAX_CAS_ATTEMPTS):
        sub = get_subscription(db, subscription_id)
        observed = _observe(sub)
        if txn_id and transaction_exists(db, txn_id):
            return _already_processed(db, subscription_id, AlreadyProcessed(txn_id))
        if sub.status == S.PAST_DUE.value:
            return _noop(sub, "already past_due")
        if sub.status in (S.CANCELLED.value, S.EXPIRED.value):
            return _noop(sub, f"status is terminal ({sub.status})")
        try:
            check_transition(sub.status, S.PAST_DUE)
        except InvalidTransition as e:
            return _rejected(sub, e)

        if not _compare_and_swap(db, sub.id, observed, {UserSubscriptionEntity.status: S.PAST_DUE.value}):
            db.rollback()
            continue

        failed = PaymentDetails(
            transaction_id=txn_id,
            method=payment.method if payment else None,
            amount=payment.amount if payment else None,
            currency=payment.currency if payment else None,
            status=PaymentStatus.FAILED.value,
            gateway_reference=payment.gateway_reference if payment else None,
            details=payment.details if payment else {},
        )
        db.add(build_history_row(
            sub, HistoryAction.PAYMENT, previous_plan_id=sub.plan_id, new_plan_id=sub.plan_id, payment=failed,
        ))

        if not _commit(db, txn_id):
            return _already_processed(db, subscription_id, AlreadyProcessed(txn_id))

        db.refresh(sub)
        logger.info("Subscription %s marked past_due, txn=%s", sub.id, txn_id)
        return TransitionResult(sub, True, APPLIED)

    raise ConcurrentUpdate(f"Subscription {subscription_id} changed concurrently, past_due not applied")


def cancel(
    db: Session,
    subscription_id: int,
    reason: str | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    """Cancel without shortening the period: access lasts until current_period_end."""
    now = now or _now_utc()

    for _ in range(MAX_CAS_ATTEMPTS):
        sub = get_subscription(db, subscription_id)
        observed = _observe(sub)
        if sub.status == S.CANCELLED.value:
            return _noop(sub, "already cancelled")
        try:
            check_transition(sub.status, S.CANCELLED)
        except InvalidTransition as e:
            return _rejected(sub, e)

        values = {
            UserSubscriptionEntity.status: S.CANCELLED.value,
            UserSubscriptionEntity.cancelled_at: now,
        }
        if not _compare_and_swap(db, sub.id, observed, values):
            db.rollback()
            continue

        db.add(build_history_row(
            sub,
            HistoryAction.CANCELLATION,
            previous_plan_id=sub.plan_id,
            new_plan_id=sub.plan_id,
            details={"reason": reason, "previous_status": observed.status},
        ))
        db.commit()

        db.refresh(sub)
        logger.info("Subscription %s cancelled (reason=%r), access until %s", sub.id, reason, sub.current_period_end)
        return TransitionResult(sub, True, APPLIED)

    raise ConcurrentUpdate(f"Subscription {subscription_id} changed concurrently, cancellation not applied")


def expiry_deadline(sub: UserSubscriptionEntity) -> datetime:
    if sub.status == S.PAST_DUE.value:
        return sub.current_period_end + timedelta(days=settings.grace_period_days)
    return sub.current_period_end


def expire(db: Session, subscription_id: int, now: datetime | None = None) -> TransitionResult:
    """System transition used by the scheduler once a period has lapsed."""
    now = now or _now_utc()

    for _ in range(MAX_CAS_ATTEMPTS):
        sub = get_subscription(db, subscription_id)
        observed = _observe(sub)
        if sub.status == S.EXPIRED.value:
            return _noop(sub, "already expired")
        try:
            check_transition(sub.status, S.EXPIRED)
            if expiry_deadline(sub) >= now:
                raise InvalidTransition(sub.status, S.EXPIRED.value, "current period has not elapsed")
        except InvalidTransition as e:
            return _rejected(sub, e)

        if not _compare_and_swap(db, sub.id, observed, {UserSubscriptionEntity.status: S.EXPIRED.value}):
            db.rollback()
            continue

        free_plan = get_free_plan(db)
        db.add(build_history_row(
            sub,
            HistoryAction.DOWNGRADE,
            previous_plan_id=sub.plan_id,
            new_plan_id=free_plan.id if free_plan else None,
            details={"reason": "period_elapsed", "previous_status": observed.status},
        ))
        db.commit()

        db.refresh(sub)
        logger.info("Subscription %s expired (period ended %s)", sub.id, sub.current_period_end.isoformat())
        return TransitionResult(sub, True, APPLIED)

    raise ConcurrentUpdate(f"Subscription {subscription_id} changed concurrently, expiry not applied")


def create_manual_subscription(
    db: Session,
    user_id: int,
    plan: SubscriptionPlanEntity,
    period_days: int | None = None,
    now: datetime | None = None,
) -> UserSubscriptionEntity:
    """Admin reactivation: always a brand-new subscription row, replacing any open one."""
    now = now or _now_utc()

    for _ in range(MAX_CAS_ATTEMPTS):
        previous = get_current_subscription(db, user_id)

        sub = UserSubscriptionEntity(
            user_id=user_id,
            plan_id=plan.id,
            status=S.ACTIVE.value,
            current_period_start=now,
            current_period_end=now + timedelta(days=period_days or period_length_days(plan)),
            created_at=now,
        )
        sub.plan = plan
        db.add(sub)
        db.flush()

        if not _supersede_open_subscriptions(db, sub, now):
            db.rollback()
            continue

        db.add(build_history_row(
            sub,
            HistoryAction.RENEWAL,
            previous_plan_id=previous.plan_id if previous else None,
            new_plan_id=plan.id,
            payment=PaymentDetails(method="manual", amount=Decimal("0"), currency=plan.currency),
            details={"source": "admin"},
        ))
        db.commit()
        db.refresh(sub)
        logger.info("Manual subscription %s created for user %s on plan %s", sub.id, user_id, plan.name)
        return sub

    raise ConcurrentUpdate(f"Subscriptions of user {user_id} changed concurrently, manual subscription not created")
