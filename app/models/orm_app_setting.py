from sqlalchemy import Column, DateTime, JSON, String

from db.base import Base
from core.base_classes import BaseEntity, utcnow


class AppSettingEntity(Base, BaseEntity):
    __tablename__ = "app_settings"

    key = Column(String(100), unique=True, nullable=False, index=True)
    value = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
