"""Registration and login flows built on top of the OTP engine.

:class:`AuthService` is constructed once per application with its
collaborators passed in; it owns no module-level state. Database work for a
step is committed before the code is handed to the email sender, so a failed
delivery leaves the session and the pending registration in place.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from ..accounts import (
    cleanup_expired_registrations,
    create_user,
    delete_pending_registration,
    extend_pending_registration,
    get_pending_registration,
    get_user_by_email,
    replace_pending_registration,
    touch_last_login,
)
from ..db import session_scope, utcnow
from ..errors import (
    BlockedError,
    ConflictError,
    NotFoundError,
    TooSoonError,
    UnauthorizedError,
    ValidationError,
)
from ..models import User
from .hashing import hash_password, verify_password
from .otp import (
    OtpPolicy,
    OtpSessionStatus,
    claim_session,
    cleanup_expired_sessions,
    create_session,
    get_session_status,
    verify_session,
)
from .tokens import TokenIssuer

logger = logging.getLogger(__name__)

PHONE_RE = re.compile(r"[0-9]{10}")
INVALID_CREDENTIALS = "invalid email or password"


@dataclass(frozen=True)
class OtpIssued:
    email: str
    expires_at: datetime
    expires_in_seconds: int
    user_id: int | None = None


@dataclass(frozen=True)
class Authenticated:
    user: User
    token: str


class AuthService:
    def __init__(
        self,
        sessionmaker,
        email_sender,
        tokens: TokenIssuer,
        policy: OtpPolicy,
        *,
        min_password_length: int = 6,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._email_sender = email_sender
        self._tokens = tokens
        self._policy = policy
        self._min_password_length = min_password_length

    @property
    def policy(self) -> OtpPolicy:
        return self._policy

    def _scope(self):
        return session_scope(self._sessionmaker)

    def _dispatch(self, email: str, code: str, purpose: str) -> None:
        self._email_sender.send_otp_email(email, code, purpose)

    def register(self, email: str, phone: str, password: str) -> OtpIssued:
        if len(password) < self._min_password_length:
            raise ValidationError(f"password must be at least {self._min_password_length} characters")
        if not PHONE_RE.fullmatch(phone):
            raise ValidationError("phone number must be 10 digits")

        password_hash = hash_password(password)
        now = utcnow()
        try:
            with self._scope() as db:
                if get_user_by_email(db, email) is not None:
                    raise ConflictError("user with this email already exists")

                code, view = create_session(db, email=email, purpose="registration", policy=self._policy, now=now)
                pending = replace_pending_registration(
                    db,
                    email=email,
                    phone=phone,
                    password_hash=password_hash,
                    expires_at=view.expires_at,
                )
                pending_id = pending.id
        except IntegrityError as exc:
            logger.warning("Concurrent registration rejected email=%s", email)
            raise ConflictError("registration for this email is already in progress") from exc

        self._dispatch(email, code, "registration")
        logger.info("User registration started email=%s pending_id=%s", email, pending_id)
        return OtpIssued(email=email, expires_at=view.expires_at, expires_in_seconds=view.expires_in_seconds)

    def verify_registration_otp(self, email: str, code: str) -> Authenticated:
        try:
            with self._scope() as db:
                record = verify_session(db, email=email, purpose="registration", code=code, policy=self._policy)
                if not claim_session(db, record):
                    raise NotFoundError("no active code, request a new one")

                pending = get_pending_registration(db, email)
                if pending is None:
                    raise NotFoundError("no pending registration found")
                if get_user_by_email(db, email) is not None:
                    raise ConflictError("user with this email already exists")

                user = create_user(db, email=email, phone=pending.phone, password_hash=pending.password_hash)
                delete_pending_registration(db, email)
                token = self._tokens.issue(user.id, user.email)
        except IntegrityError as exc:
            raise ConflictError("user with this email already exists") from exc

        logger.info("User registered and verified user_id=%s email=%s", user.id, email)
        return Authenticated(user=user, token=token)

    def login(self, email: str, password: str) -> OtpIssued:
        with self._scope() as db:
            user = get_user_by_email(db, email)
            if user is None or not verify_password(password, user.password_hash):
                raise UnauthorizedError(INVALID_CREDENTIALS)
            if not user.is_active:
                logger.warning("Login attempt on inactive account user_id=%s", user.id)
                raise UnauthorizedError(INVALID_CREDENTIALS)

            user_id = user.id
            code, view = create_session(db, email=email, purpose="login", policy=self._policy)

        self._dispatch(email, code, "login")
        logger.info("Login OTP sent user_id=%s email=%s", user_id, email)
        return OtpIssued(
            email=email,
            expires_at=view.expires_at,
            expires_in_seconds=view.expires_in_seconds,
            user_id=user_id,
        )

    def verify_login_otp(self, email: str, code: str) -> Authenticated:
        with self._scope() as db:
            record = verify_session(db, email=email, purpose="login", code=code, policy=self._policy)
            user = get_user_by_email(db, email)
            if user is None or not user.is_active:
                raise UnauthorizedError(INVALID_CREDENTIALS)
            if not claim_session(db, record):
                raise NotFoundError("no active code, request a new one")

            touch_last_login(db, user)
            token = self._tokens.issue(user.id, user.email)

        logger.info("User logged in user_id=%s email=%s", user.id, email)
        return Authenticated(user=user, token=token)

    def resend_otp(self, email: str, purpose: str = "login") -> OtpIssued:
        now = utcnow()
        with self._scope() as db:
            status = get_session_status(db, email=email, purpose=purpose, policy=self._policy, now=now)
            if status is None:
                # a registration whose session was discarded on expiry can still restart
                if purpose != "registration" or get_pending_registration(db, email) is None:
                    raise NotFoundError(f"no active {purpose} session found")
            elif status.is_blocked:
                raise BlockedError(status.blocked_until_seconds)
            elif not status.has_expired:
                raise TooSoonError(status.expires_in_seconds)

            code, view = create_session(db, email=email, purpose=purpose, policy=self._policy, now=now)
            if purpose == "registration":
                extend_pending_registration(db, email, view.expires_at)

        self._dispatch(email, code, purpose)
        logger.info("OTP resent email=%s purpose=%s", email, purpose)
        return OtpIssued(email=email, expires_at=view.expires_at, expires_in_seconds=view.expires_in_seconds)

    def otp_status(self, email: str, purpose: str = "login") -> OtpSessionStatus:
        with self._scope() as db:
            status = get_session_status(db, email=email, purpose=purpose, policy=self._policy)
        if status is None:
            raise NotFoundError("no active OTP session found")
        return status

    def verify_token(self, token: str) -> dict:
        return self._tokens.verify(token)

    def cleanup_expired(self) -> tuple[int, int]:
        with self._scope() as db:
            sessions = cleanup_expired_sessions(db)
            registrations = cleanup_expired_registrations(db)
        return sessions, registrations
