from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from models.enums import PaymentStatus, SubscriptionStatus
from models.orm_subscription import UserSubscriptionEntity
from models.orm_subscription_history import UserSubscriptionHistoryEntity
from services.exceptions import TransactionNotFound


@dataclass(frozen=True)
class BillingStats:
    total_payments: int
    successful_payments: int
    failed_payments: int
    total_amount: Decimal
    average_amount: Decimal
    last_payment_date: datetime | None
    next_billing_date: datetime | None


def list_history(
    db: Session,
    user_id: int | None = None,
    subscription_id: int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[UserSubscriptionHistoryEntity]:
    q = db.query(UserSubscriptionHistoryEntity)
    if user_id is not None:
        q = q.filter(UserSubscriptionHistoryEntity.user_id == user_id)
    if subscription_id is not None:
        q = q.filter(UserSubscriptionHistoryEntity.subscription_id == subscription_id)
    return (
        q.order_by(UserSubscriptionHistoryEntity.created_at.desc(), UserSubscriptionHistoryEntity.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def get_invoice(db: Session, user_id: int, transaction_id: str) -> UserSubscriptionHistoryEntity:
    """The ledger row behind a transaction, only if it belongs to ``user_id``."""
    row = (
        db.query(UserSubscriptionHistoryEntity)
        .filter(
            UserSubscriptionHistoryEntity.transaction_id == transaction_id,
            UserSubscriptionHistoryEntity.user_id == user_id,
        )
        .first()
    )
    if not row:
        raise TransactionNotFound(f"Transaction {transaction_id} not found")
    return row


def billing_stats(db: Session, user_id: int) -> BillingStats:
    payments = (
        db.query(UserSubscriptionHistoryEntity)
        .filter(
            UserSubscriptionHistoryEntity.user_id == user_id,
            UserSubscriptionHistoryEntity.payment_status.isnot(None),
        )
        .order_by(UserSubscriptionHistoryEntity.created_at.desc(), UserSubscriptionHistoryEntity.id.desc())
        .all()
    )
    completed = [p for p in payments if p.payment_status == PaymentStatus.COMPLETED.value]
    failed = [p for p in payments if p.payment_status == PaymentStatus.FAILED.value]

    total = sum((Decimal(p.payment_amount) for p in completed if p.payment_amount is not None), Decimal("0"))
    average = (total / len(completed)).quantize(Decimal("0.01")) if completed else Decimal("0")

    current_active = (
        db.query(UserSubscriptionEntity)
        .filter(
            UserSubscriptionEntity.user_id == user_id,
            UserSubscriptionEntity.status == SubscriptionStatus.ACTIVE.value,
        )
        .order_by(UserSubscriptionEntity.created_at.desc(), UserSubscriptionEntity.id.desc())
        .first()
    )

    return BillingStats(
        total_payments=len(payments),
        successful_payments=len(completed),
        failed_payments=len(failed),
        total_amount=total,
        average_amount=average,
        last_payment_date=completed[0].created_at if completed else None,
        next_billing_date=current_active.current_period_end if current_active else None,
    )
