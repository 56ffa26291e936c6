from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from models.enums import ProviderName
from models.orm_payment_method import PaymentMethodEntity
from services.exceptions import InvalidRequest, PaymentMethodNotFound

logger = logging.getLogger(__name__)


def mask_account(account: str | None) -> str | None:
    if not account:
        return None
    digits = "".join(ch for ch in account if ch.isalnum())
    if len(digits) <= 4:
        return "****"
    return f"**** {digits[-4:]}"


def list_methods(db: Session, user_id: int) -> list[PaymentMethodEntity]:
    return (
        db.query(PaymentMethodEntity)
        .filter(PaymentMethodEntity.user_id == user_id, PaymentMethodEntity.is_active.is_(True))
        .order_by(
            PaymentMethodEntity.is_default.desc(),
            PaymentMethodEntity.created_at.desc(),
            PaymentMethodEntity.id.desc(),
        )
        .all()
    )


def get_method(db: Session, user_id: int, method_id: int) -> PaymentMethodEntity:
    method = (
        db.query(PaymentMethodEntity)
        .filter(
            PaymentMethodEntity.id == method_id,
            PaymentMethodEntity.user_id == user_id,
            PaymentMethodEntity.is_active.is_(True),
        )
        .first()
    )
    if not method:
        raise PaymentMethodNotFound(f"Payment method {method_id} not found")
    return method


def _clear_default(db: Session, user_id: int) -> None:
    (
        db.query(PaymentMethodEntity)
        .filter(PaymentMethodEntity.user_id == user_id, PaymentMethodEntity.is_default.is_(True))
        .update({PaymentMethodEntity.is_default: False}, synchronize_session=False)
    )
    db.flush()


def add_method(
    db: Session,
    user_id: int,
    provider: str,
    payment_type: str,
    account: str | None = None,
    display_name: str | None = None,
    make_default: bool = False,
) -> PaymentMethodEntity:
    if provider not in {p.value for p in ProviderName}:
        raise InvalidRequest(f"Unknown payment provider '{provider}'")

    has_methods = bool(list_methods(db, user_id))
    make_default = make_default or not has_methods
    if make_default:
        _clear_default(db, user_id)

    method = PaymentMethodEntity(
        user_id=user_id,
        provider=provider,
        payment_type=payment_type,
        display_name=display_name or f"{provider.title()} {payment_type.replace('_', ' ')}",
        masked_data=mask_account(account),
        is_default=make_default,
        is_active=True,
    )
    db.add(method)
    db.commit()
    db.refresh(method)
    logger.info("Payment method %s added for user %s (default=%s)", method.id, user_id, method.is_default)
    return method


def set_default(db: Session, user_id: int, method_id: int) -> PaymentMethodEntity:
    method = get_method(db, user_id, method_id)
    if method.is_default:
        return method

    _clear_default(db, user_id)
    method.is_default = True
    db.commit()
    db.refresh(method)
    logger.info("Payment method %s is now default for user %s", method.id, user_id)
    return method


def remove_method(db: Session, user_id: int, method_id: int) -> None:
    method = get_method(db, user_id, method_id)
    was_default = method.is_default
    method.is_active = False
    method.is_default = False
    db.flush()

    if was_default:
        replacement = (
            db.query(PaymentMethodEntity)
            .filter(PaymentMethodEntity.user_id == user_id, PaymentMethodEntity.is_active.is_(True))
            .order_by(PaymentMethodEntity.created_at.desc(), PaymentMethodEntity.id.desc())
            .first()
        )
        if replacement:
            replacement.is_default = True
    db.commit()
    logger.info("Payment method %s removed for user %s", method_id, user_id)
