"""Periodic subscription maintenance: expiry and renewal reminders.

Every sweep is safe to re-run: each item is handled in its own transaction
and only through guarded updates, so a second run finds nothing left to do.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from core.settings import settings
from models.enums import SubscriptionStatus
from models.orm_subscription import UserSubscriptionEntity
from services import subscription_service
from services.notifications import TEMPLATE_EXPIRED, TEMPLATE_EXPIRING_SOON, NotificationSender

logger = logging.getLogger(__name__)

S = SubscriptionStatus

TASK_EXPIRATION = "expiration"
TASK_REMINDERS = "reminders"


@dataclass
class SweepReport:
    task: str
    candidates: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)


def _notice_data(sub: UserSubscriptionEntity) -> dict:
    return {
        "subscription_id": sub.id,
        "plan": sub.plan.display_name if sub.plan else None,
        "current_period_end": sub.current_period_end.isoformat(),
    }


def _expiry_candidates(db: Session, now: datetime) -> List[int]:
    grace_cutoff = now - timedelta(days=settings.grace_period_days)
    rows = (
        db.query(UserSubscriptionEntity.id)
        .filter(
            or_(
                and_(
                    UserSubscriptionEntity.status == S.ACTIVE.value,
                    UserSubscriptionEntity.current_period_end < now,
                ),
                and_(
                    UserSubscriptionEntity.status == S.PAST_DUE.value,
                    UserSubscriptionEntity.current_period_end < grace_cutoff,
                ),
            )
        )
        .order_by(UserSubscriptionEntity.current_period_end.asc(), UserSubscriptionEntity.id.asc())
        .all()
    )
    return [r.id for r in rows]


def run_expiration_sweep(
    db: Session,
    notifier: Optional[NotificationSender] = None,
    now: Optional[datetime] = None,
) -> SweepReport:
    now = now or subscription_service._now_utc()
    report = SweepReport(task=TASK_EXPIRATION)
    ids = _expiry_candidates(db, now)
    report.candidates = len(ids)

    for sub_id in ids:
        try:
            result = subscription_service.expire(db, sub_id, now=now)
        except Exception as e:
            db.rollback()
            report.failed += 1
            report.errors.append(f"subscription {sub_id}: {e}")
            logger.exception("Expiry of subscription %s failed", sub_id)
            continue

        if not result.applied:
            report.skipped += 1
            continue
        report.processed += 1

        if notifier is not None:
            sub = result.subscription
            try:
                notifier.send(sub.user_id, TEMPLATE_EXPIRED, _notice_data(sub))
            except Exception:
                logger.exception("Expiry notice for subscription %s not sent", sub_id)

    logger.info(
        "Expiration sweep: %s candidates, %s expired, %s skipped, %s failed",
        report.candidates, report.processed, report.skipped, report.failed,
    )
    return report


def _reminder_candidates(db: Session, now: datetime, window_days: int) -> List[int]:
    rows = (
        db.query(UserSubscriptionEntity.id)
        .filter(
            UserSubscriptionEntity.status == S.ACTIVE.value,
            UserSubscriptionEntity.current_period_end > now,
            UserSubscriptionEntity.current_period_end <= now + timedelta(days=window_days),
            or_(
                UserSubscriptionEntity.reminder_sent_for.is_(None),
                UserSubscriptionEntity.reminder_sent_for != UserSubscriptionEntity.current_period_end,
            ),
        )
        .order_by(UserSubscriptionEntity.current_period_end.asc(), UserSubscriptionEntity.id.asc())
        .all()
    )
    return [r.id for r in rows]


def _record_reminder(db: Session, sub: UserSubscriptionEntity) -> bool:
    updated = (
        db.query(UserSubscriptionEntity)
        .filter(
            UserSubscriptionEntity.id == sub.id,
            UserSubscriptionEntity.status == S.ACTIVE.value,
            UserSubscriptionEntity.current_period_end == sub.current_period_end,
            or_(
                UserSubscriptionEntity.reminder_sent_for.is_(None),
                UserSubscriptionEntity.reminder_sent_for != sub.current_period_end,
            ),
        )
        .update({UserSubscriptionEntity.reminder_sent_for: sub.current_period_end}, synchronize_session=False)
    )
    db.commit()
    return updated == 1


def run_reminder_sweep(
    db: Session,
    notifier: NotificationSender,
    now: Optional[datetime] = None,
    window_days: Optional[int] = None,
) -> SweepReport:
    now = now or subscription_service._now_utc()
    window_days = settings.reminder_window_days if window_days is None else window_days
    report = SweepReport(task=TASK_REMINDERS)
    ids = _reminder_candidates(db, now, window_days)
    report.candidates = len(ids)

    for sub_id in ids:
        try:
            sub = subscription_service.get_subscription(db, sub_id)
            if sub.status != S.ACTIVE.value or sub.reminder_sent_for == sub.current_period_end:
                report.skipped += 1
                continue

            data = _notice_data(sub)
            data["days_left"] = max((sub.current_period_end - now).days, 0)
            if not notifier.send(sub.user_id, TEMPLATE_EXPIRING_SOON, data):
                report.failed += 1
                report.errors.append(f"subscription {sub_id}: reminder not delivered")
                continue

            if _record_reminder(db, sub):
                report.processed += 1
            else:
                report.skipped += 1
        except Exception as e:
            db.rollback()
            report.failed += 1
            report.errors.append(f"subscription {sub_id}: {e}")
            logger.exception("Reminder for subscription %s failed", sub_id)

    logger.info(
        "Reminder sweep: %s candidates, %s reminded, %s skipped, %s failed",
        report.candidates, report.processed, report.skipped, report.failed,
    )
    return report


def run_scheduled_tasks(
    db: Session,
    notifier: NotificationSender,
    now: Optional[datetime] = None,
) -> List[SweepReport]:
    now = now or subscription_service._now_utc()
    return [
        run_expiration_sweep(db, notifier, now=now),
        run_reminder_sweep(db, notifier, now=now),
    ]
