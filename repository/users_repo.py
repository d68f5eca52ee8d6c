from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import func as sa_func

from repository.errors import ConflictError
from shared.db import Account, User


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "emailVerified": bool(user.email_verified),
        "image": user.image,
        "createdAt": _format_dt(user.created_at),
        "updatedAt": _format_dt(user.updated_at),
    }


def get_user(db, user_id: str) -> Optional[User]:
    if not user_id:
        return None
    return db.query(User).filter_by(id=str(user_id)).one_or_none()


def get_user_by_email(db, email: str) -> Optional[User]:
    normalized = str(email or "").strip().lower()
    if not normalized:
        return None
    return db.query(User).filter(sa_func.lower(User.email) == normalized).first()


def get_credential_account(db, user_id: str) -> Optional[Account]:
    return db.query(Account).filter_by(user_id=user_id, provider_id="credential").first()


def create_user_with_password(db, *, name: str, email: str, password_hash: str) -> User:
    if get_user_by_email(db, email):
        raise ConflictError("An account with this email already exists")
    user = User(name=name, email=email.lower(), email_verified=False)
    db.add(user)
    db.flush()
    db.add(
        Account(
            user_id=user.id,
            provider_id="credential",
            account_id=user.id,
            password=password_hash,
        )
    )
    db.flush()
    return user


def update_user_profile(db, user: User, *, name: str, image: Optional[str] = None) -> User:
    user.name = name
    if image is not None:
        user.image = image
    user.updated_at = datetime.utcnow()
    db.flush()
    return user
