from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, select, update

from .db import utcnow
from .models import PendingRegistration, User

logger = logging.getLogger(__name__)


def get_user_by_email(session, email: str) -> User | None:
    return session.execute(select(User).where(User.email == email)).scalar_one_or_none()


def create_user(session, *, email: str, phone: str, password_hash: str) -> User:
    user = User(
        email=email,
        phone=phone,
        password_hash=password_hash,
        is_email_verified=True,
        is_active=True,
    )
    session.add(user)
    session.flush()
    logger.info("User created user_id=%s email=%s", user.id, email)
    return user


def touch_last_login(session, user: User, now: datetime | None = None) -> None:
    now = now or utcnow()
    user.last_login_at = now
    user.updated_at = now
    session.flush()


def get_pending_registration(session, email: str) -> PendingRegistration | None:
    stmt = select(PendingRegistration).where(PendingRegistration.email == email)
    return session.execute(stmt).scalar_one_or_none()


def delete_pending_registration(session, email: str) -> int:
    stmt = (
        delete(PendingRegistration)
        .where(PendingRegistration.email == email)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount


def replace_pending_registration(
    session,
    *,
    email: str,
    phone: str,
    password_hash: str,
    expires_at: datetime,
) -> PendingRegistration:
    if delete_pending_registration(session, email):
        logger.info("Replaced stale pending registration email=%s", email)
        session.flush()

    pending = PendingRegistration(
        email=email,
        phone=phone,
        password_hash=password_hash,
        expires_at=expires_at,
    )
    session.add(pending)
    session.flush()
    return pending


def extend_pending_registration(session, email: str, expires_at: datetime) -> bool:
    stmt = (
        update(PendingRegistration)
        .where(PendingRegistration.email == email)
        .values(expires_at=expires_at)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


def cleanup_expired_registrations(session, now: datetime | None = None) -> int:
    now = now or utcnow()
    stmt = (
        delete(PendingRegistration)
        .where(PendingRegistration.expires_at < now)
        .execution_options(synchronize_session=False)
    )
    deleted = session.execute(stmt).rowcount
    if deleted:
        logger.info("Cleaned up expired pending registrations count=%s", deleted)
    return deleted
