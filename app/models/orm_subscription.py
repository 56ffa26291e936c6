from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from db.base import Base
from core.base_classes import BaseEntity


class UserSubscriptionEntity(Base, BaseEntity):
    __tablename__ = "user_subscriptions"

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    plan_id = Column(
        Integer,
        ForeignKey("subscription_plans.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    status = Column(String(20), nullable=False, default="trialing")

    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)

    cancelled_at = Column(DateTime, nullable=True)
    # current_period_end value the last renewal reminder went out for
    reminder_sent_for = Column(DateTime, nullable=True)

    user = relationship("UserEntity", back_populates="subscriptions")
    plan = relationship("SubscriptionPlanEntity", back_populates="subscriptions")

    __table_args__ = (
        CheckConstraint(
            "current_period_end >= current_period_start",
            name="ck_user_subscriptions_period_order",
        ),
        Index("ix_user_subscriptions_status_period_end", "status", "current_period_end"),
    )
