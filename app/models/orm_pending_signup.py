from sqlalchemy import Column, DateTime, ForeignKey, Integer
from sqlalchemy.orm import relationship

from db.base import Base
from core.base_classes import BaseEntity


class PendingSignupEntity(Base, BaseEntity):
    """Paid plan a user picked, waiting for its first successful payment.

    A signup links the trialing subscription it opened. A plan change made at
    checkout links nothing until the payment lands: the subscription row is
    created, and ``subscription_id`` filled in, at activation.
    """

    __tablename__ = "pending_signups"

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)
    subscription_id = Column(
        Integer,
        ForeignKey("user_subscriptions.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )

    completed_at = Column(DateTime, nullable=True)

    plan = relationship("SubscriptionPlanEntity")
