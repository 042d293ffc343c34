"""One-time code sessions: issue, verify, block, expire and delete.

A session is a single ``otp_sessions`` row per (email, purpose). Every state
change is one statement: an INSERT on creation, a conditional UPDATE on a
failed attempt, a DELETE on expiry, supersession or successful use. Writes
made on a failure path are committed before the error is raised, so a caller
rolling back its own unit of work cannot undo an attempt count or an expiry.
"""
from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update

from ..db import utcnow
from ..errors import (
    BlockedError,
    InternalError,
    NotFoundError,
    OtpExpiredError,
    OtpInvalidError,
    ValidationError,
)
from ..models import OTP_PURPOSES, OtpSession
from .hashing import compare_code, hash_code

logger = logging.getLogger(__name__)

OTP_LENGTH = 10
_CODE_RE = re.compile(rf"[0-9]{{{OTP_LENGTH}}}")
CODE_FORMAT_ERROR = f"otp must be a {OTP_LENGTH}-digit number"
_MAX_UPDATE_RETRIES = 5


@dataclass(frozen=True)
class OtpPolicy:
    secret: str
    expiry_minutes: int = 15
    cooldown_minutes: int = 5
    max_attempts: int = 3

    @classmethod
    def from_config(cls, config) -> "OtpPolicy":
        return cls(
            secret=config["SECRET_KEY"],
            expiry_minutes=int(config["OTP_EXPIRY_MINUTES"]),
            cooldown_minutes=int(config["OTP_RESEND_COOLDOWN_MINUTES"]),
            max_attempts=int(config["OTP_MAX_ATTEMPTS"]),
        )


@dataclass(frozen=True)
class OtpSessionView:
    expires_at: datetime
    expires_in_seconds: int


@dataclass(frozen=True)
class OtpSessionStatus:
    expires_at: datetime
    expires_in_seconds: int
    has_expired: bool
    attempt_count: int
    attempts_remaining: int
    is_blocked: bool
    blocked_until: datetime | None
    blocked_until_seconds: int


def generate_code() -> str:
    return f"{secrets.randbelow(10 ** OTP_LENGTH):0{OTP_LENGTH}d}"


def is_valid_code_format(code) -> bool:
    return isinstance(code, str) and bool(_CODE_RE.fullmatch(code))


def seconds_until(moment: datetime | None, now: datetime) -> int:
    if moment is None:
        return 0
    return max(0, int((moment - now).total_seconds()))


def _check_purpose(purpose: str) -> None:
    if purpose not in OTP_PURPOSES:
        raise ValidationError("purpose must be 'registration' or 'login'")


def get_latest_session(session, email: str, purpose: str) -> OtpSession | None:
    stmt = (
        select(OtpSession)
        .where(OtpSession.email == email, OtpSession.purpose == purpose)
        .order_by(OtpSession.created_at.desc(), OtpSession.id.desc())
        .execution_options(populate_existing=True)
    )
    return session.execute(stmt).scalars().first()


def delete_session(session, email: str, purpose: str) -> int:
    stmt = (
        delete(OtpSession)
        .where(OtpSession.email == email, OtpSession.purpose == purpose)
        .execution_options(synchronize_session=False)
    )
    deleted = session.execute(stmt).rowcount
    if deleted:
        logger.info("OTP session deleted email=%s purpose=%s", email, purpose)
    return deleted


def claim_session(session, record: OtpSession) -> bool:
    """Delete a verified session by id; False if another request already did."""
    stmt = (
        delete(OtpSession)
        .where(OtpSession.id == record.id)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


def create_session(
    session,
    *,
    email: str,
    purpose: str,
    policy: OtpPolicy,
    now: datetime | None = None,
) -> tuple[str, OtpSessionView]:
    _check_purpose(purpose)
    now = now or utcnow()

    delete_session(session, email, purpose)

    code = generate_code()
    record = OtpSession(
        email=email,
        purpose=purpose,
        otp_hash=hash_code(code, policy.secret),
        attempt_count=0,
        blocked_until=None,
        expires_at=now + timedelta(minutes=policy.expiry_minutes),
        created_at=now,
        updated_at=now,
    )
    session.add(record)
    session.flush()

    logger.info(
        "OTP session created email=%s purpose=%s expires_at=%s",
        email,
        purpose,
        record.expires_at.isoformat(),
    )
    view = OtpSessionView(
        expires_at=record.expires_at,
        expires_in_seconds=seconds_until(record.expires_at, now),
    )
    return code, view


def verify_session(
    session,
    *,
    email: str,
    purpose: str,
    code: str,
    policy: OtpPolicy,
    now: datetime | None = None,
) -> OtpSession:
    """Check ``code`` against the current session and return the row on a match.

    The row is left in place; the caller claims it with :func:`claim_session`.
    """
    _check_purpose(purpose)
    if not is_valid_code_format(code):
        raise ValidationError(CODE_FORMAT_ERROR)
    now = now or utcnow()

    for _ in range(_MAX_UPDATE_RETRIES):
        record = get_latest_session(session, email, purpose)
        if record is None:
            logger.warning("OTP session not found email=%s purpose=%s", email, purpose)
            raise NotFoundError("no active code, request a new one")

        if now > record.expires_at:
            delete_session(session, email, purpose)
            session.commit()
            logger.warning("OTP expired email=%s purpose=%s", email, purpose)
            raise OtpExpiredError()

        if record.blocked_until is not None and now < record.blocked_until:
            remaining = seconds_until(record.blocked_until, now)
            logger.warning(
                "OTP verification blocked email=%s purpose=%s remaining=%s",
                email,
                purpose,
                remaining,
            )
            raise BlockedError(remaining)

        if compare_code(code, record.otp_hash, policy.secret):
            logger.info("OTP verified email=%s purpose=%s", email, purpose)
            return record

        seen = record.attempt_count
        new_count = seen + 1
        values = {"attempt_count": new_count, "updated_at": now}
        if new_count >= policy.max_attempts:
            values["blocked_until"] = now + timedelta(minutes=policy.cooldown_minutes)

        stmt = (
            update(OtpSession)
            .where(OtpSession.id == record.id, OtpSession.attempt_count == seen)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if session.execute(stmt).rowcount != 1:
            # another verifier changed the row first; re-evaluate against it
            session.rollback()
            continue
        session.commit()

        if "blocked_until" in values:
            logger.warning(
                "OTP max attempts reached email=%s purpose=%s blocked_minutes=%s",
                email,
                purpose,
                policy.cooldown_minutes,
            )
        logger.warning(
            "Invalid OTP attempt email=%s purpose=%s attempt_count=%s",
            email,
            purpose,
            new_count,
        )
        raise OtpInvalidError(max(0, policy.max_attempts - new_count))

    raise InternalError("could not record verification attempt")


def get_session_status(
    session,
    *,
    email: str,
    purpose: str,
    policy: OtpPolicy,
    now: datetime | None = None,
) -> OtpSessionStatus | None:
    _check_purpose(purpose)
    now = now or utcnow()
    record = get_latest_session(session, email, purpose)
    if record is None:
        return None

    expires_in = seconds_until(record.expires_at, now)
    is_blocked = record.blocked_until is not None and now < record.blocked_until
    return OtpSessionStatus(
        expires_at=record.expires_at,
        expires_in_seconds=expires_in,
        has_expired=now > record.expires_at,
        attempt_count=record.attempt_count,
        attempts_remaining=max(0, policy.max_attempts - record.attempt_count),
        is_blocked=is_blocked,
        blocked_until=record.blocked_until if is_blocked else None,
        blocked_until_seconds=seconds_until(record.blocked_until, now),
    )


def cleanup_expired_sessions(session, now: datetime | None = None) -> int:
    now = now or utcnow()
    stmt = (
        delete(OtpSession)
        .where(OtpSession.expires_at < now)
        .execution_options(synchronize_session=False)
    )
    deleted = session.execute(stmt).rowcount
    if deleted:
        logger.info("Cleaned up expired OTP sessions count=%s", deleted)
    return deleted
