from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from jose import jwt, JWTError
from sqlalchemy.orm import Session

from core.settings import settings
from models.orm_user import UserEntity


class DuplicateUser(ValueError):
    pass


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))


def create_access_token(*, user_id: int) -> str:
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=settings.access_token_expire_minutes)
    payload = {"user_id": user_id, "exp": exp}
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise ValueError("Invalid or expired token")


def register_user(
    db: Session,
    *,
    username: str,
    email: str,
    password: str,
    first_name: Optional[str] = None,
) -> UserEntity:
    if db.query(UserEntity).filter(UserEntity.username == username).first():
        raise DuplicateUser("Username already exists")
    if db.query(UserEntity).filter(UserEntity.email == email).first():
        raise DuplicateUser("Email already exists")

    user = UserEntity(
        username=username,
        email=email,
        password_hash=hash_password(password),
        first_name=first_name,
        is_admin=False,
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def authenticate(db: Session, username: str, password: str) -> Optional[UserEntity]:
    user = db.query(UserEntity).filter(UserEntity.username == username, UserEntity.is_active.is_(True)).first()
    if not user or not verify_password(password, user.password_hash):
        return None
    return user
