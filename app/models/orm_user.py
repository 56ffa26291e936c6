from sqlalchemy import Boolean, Column, String
from sqlalchemy.orm import relationship

from db.base import Base
from core.base_classes import BaseEntity


class UserEntity(Base, BaseEntity):
    __tablename__ = "users"

    username = Column(String, unique=True, nullable=False, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    first_name = Column(String, nullable=True)

    is_admin = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    subscriptions = relationship(
        "UserSubscriptionEntity",
        back_populates="user",
        passive_deletes="all",
        order_by="UserSubscriptionEntity.id",
    )

    history = relationship(
        "UserSubscriptionHistoryEntity",
        back_populates="user",
        passive_deletes="all",
    )

    payment_methods = relationship(
        "PaymentMethodEntity",
        back_populates="user",
        cascade="all, delete-orphan",
    )
