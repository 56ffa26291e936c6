from sqlalchemy import Boolean, Column, JSON, Numeric, String, Text
from sqlalchemy.orm import relationship

from db.base import Base
from core.base_classes import BaseEntity


class SubscriptionPlanEntity(Base, BaseEntity):
    __tablename__ = "subscription_plans"

    name = Column(String(50), unique=True, nullable=False, index=True)
    display_name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    price = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    billing_cycle = Column(String(20), nullable=False, default="monthly")

    features = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)

    subscriptions = relationship("UserSubscriptionEntity", back_populates="plan")

    @property
    def is_free(self) -> bool:
        return (self.price or 0) == 0
