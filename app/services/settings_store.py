"""Runtime-editable settings kept in the ``app_settings`` table."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from models.orm_app_setting import AppSettingEntity

logger = logging.getLogger(__name__)

DISCORD_KEY = "discord"
DISCORD_DEFAULTS: dict[str, Any] = {
    "server_url": "https://discord.gg/tradingacademy",
    "server_name": "Trading Academy Community",
    "invite_code": "tradingacademy",
    "is_active": True,
}


def get_setting(db: Session, key: str, default: Any = None) -> Any:
    row = db.query(AppSettingEntity).filter(AppSettingEntity.key == key).first()
    return row.value if row else default


def put_setting(db: Session, key: str, value: Any) -> Any:
    row = db.query(AppSettingEntity).filter(AppSettingEntity.key == key).first()
    if row:
        row.value = value
    else:
        row = AppSettingEntity(key=key, value=value)
        db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("Setting %s updated", key)
    return row.value


def get_discord_settings(db: Session) -> dict[str, Any]:
    return {**DISCORD_DEFAULTS, **(get_setting(db, DISCORD_KEY) or {})}


def update_discord_settings(db: Session, changes: dict[str, Any]) -> dict[str, Any]:
    current = get_discord_settings(db)
    for key, value in changes.items():
        if key in DISCORD_DEFAULTS and value is not None:
            current[key] = value
    return put_setting(db, DISCORD_KEY, current)
