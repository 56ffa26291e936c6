from sqlalchemy import Column, ForeignKey, Integer, JSON, Numeric, String
from sqlalchemy.orm import relationship

from db.base import Base
from core.base_classes import BaseEntity


class UserSubscriptionHistoryEntity(Base, BaseEntity):
    """Append-only billing ledger. Rows are inserted, never updated or deleted."""

    __tablename__ = "user_subscription_history"

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    subscription_id = Column(
        Integer,
        ForeignKey("user_subscriptions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    action_type = Column(String(20), nullable=False)
    previous_plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=True)
    new_plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=True)

    payment_method = Column(String(50), nullable=True)
    payment_amount = Column(Numeric(10, 2), nullable=True)
    payment_currency = Column(String(10), nullable=True)
    payment_status = Column(String(20), nullable=True)
    billing_cycle = Column(String(20), nullable=True)

    transaction_id = Column(String(255), nullable=True, unique=True)
    gateway_reference = Column(String(255), nullable=True)
    details = Column(JSON, nullable=True)

    user = relationship("UserEntity", back_populates="history")
    subscription = relationship("UserSubscriptionEntity")
    previous_plan = relationship("SubscriptionPlanEntity", foreign_keys=[previous_plan_id])
    new_plan = relationship("SubscriptionPlanEntity", foreign_keys=[new_plan_id])
