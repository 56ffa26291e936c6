from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import relationship

from db.base import Base
from core.base_classes import BaseEntity


class PaymentMethodEntity(Base, BaseEntity):
    __tablename__ = "payment_methods"

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    provider = Column(String(30), nullable=False)
    payment_type = Column(String(30), nullable=False, default="card")
    display_name = Column(String(100), nullable=True)
    masked_data = Column(String(64), nullable=True)

    is_default = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    user = relationship("UserEntity", back_populates="payment_methods")

    __table_args__ = (
        Index(
            "uq_payment_methods_user_default",
            "user_id",
            unique=True,
            sqlite_where=text("is_default = 1"),
            postgresql_where=text("is_default"),
        ),
    )
