from __future__ import annotations

import re

from flask import Blueprint, current_app, request

from ..errors import UnauthorizedError, ValidationError
from ..extensions import AUTH_LIMIT, OTP_LIMIT, email_or_remote_address, limiter
from ..models import OTP_PURPOSES
from .otp import CODE_FORMAT_ERROR, is_valid_code_format
from .services import AuthService


auth_bp = Blueprint("auth", __name__)

EMAIL_RE = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")


def _service() -> AuthService:
    return current_app.extensions["auth_service"]


def _get_payload() -> dict:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _field(data: dict, name: str) -> str:
    value = data.get(name, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value


def _require(data: dict, *names: str) -> None:
    missing = [name for name in names if not _field(data, name).strip()]
    if missing:
        raise ValidationError("validation failed", errors=[f"{name} is required" for name in missing])


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.fullmatch(email))


def _email_from(data: dict) -> str:
    email = _normalize_email(_field(data, "email"))
    if not _is_valid_email(email):
        raise ValidationError("invalid email format")
    return email


def _otp_from(data: dict) -> str:
    code = _field(data, "otp").strip()
    if not is_valid_code_format(code):
        raise ValidationError(CODE_FORMAT_ERROR)
    return code


def _purpose_from(value: str | None) -> str:
    purpose = (value or "login").strip()
    if purpose not in OTP_PURPOSES:
        raise ValidationError("purpose must be 'registration' or 'login'")
    return purpose


def _timestamp(value) -> str | None:
    if value is None:
        return None
    return value.isoformat() + "Z"


def _issued_payload(issued, message: str) -> dict:
    payload = {
        "ok": True,
        "message": message,
        "email": issued.email,
        "otpExpiresAt": _timestamp(issued.expires_at),
        "otpExpiresInSeconds": issued.expires_in_seconds,
    }
    if issued.user_id is not None:
        payload["userId"] = issued.user_id
    return payload


def _user_payload(user) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "phone": user.phone,
        "isEmailVerified": user.is_email_verified,
    }


@auth_bp.post("/register")
@limiter.limit(AUTH_LIMIT, key_func=email_or_remote_address)
def register():
    data = _get_payload()
    _require(data, "email", "phone", "password")
    email = _email_from(data)

    issued = _service().register(email, _field(data, "phone").strip(), _field(data, "password"))
    return _issued_payload(issued, "registration started, check your email for the code"), 201


@auth_bp.post("/register/verify-otp")
@limiter.limit(OTP_LIMIT, key_func=email_or_remote_address)
def register_verify_otp():
    data = _get_payload()
    _require(data, "email", "otp")
    email = _email_from(data)

    result = _service().verify_registration_otp(email, _otp_from(data))
    return {
        "ok": True,
        "message": "registration completed",
        "user": _user_payload(result.user),
        "token": result.token,
    }


@auth_bp.post("/login")
@limiter.limit(AUTH_LIMIT, key_func=email_or_remote_address)
def login():
    data = _get_payload()
    _require(data, "email", "password")
    email = _email_from(data)

    issued = _service().login(email, _field(data, "password"))
    return _issued_payload(issued, "code sent to your email")


@auth_bp.post("/login/verify-otp")
@limiter.limit(OTP_LIMIT, key_func=email_or_remote_address)
def login_verify_otp():
    data = _get_payload()
    _require(data, "email", "otp")
    email = _email_from(data)

    result = _service().verify_login_otp(email, _otp_from(data))
    return {
        "ok": True,
        "message": "login successful",
        "user": _user_payload(result.user),
        "token": result.token,
    }


@auth_bp.post("/resend-otp")
@limiter.limit(OTP_LIMIT, key_func=email_or_remote_address)
def resend_otp():
    data = _get_payload()
    _require(data, "email")
    email = _email_from(data)
    purpose = _purpose_from(_field(data, "purpose"))

    issued = _service().resend_otp(email, purpose)
    return _issued_payload(issued, "a new code was sent to your email")


@auth_bp.get("/otp-status")
def otp_status():
    email = _normalize_email(request.args.get("email", ""))
    if not email:
        raise ValidationError("validation failed", errors=["email is required"])
    if not _is_valid_email(email):
        raise ValidationError("invalid email format")
    purpose = _purpose_from(request.args.get("purpose"))

    status = _service().otp_status(email, purpose)
    return {
        "ok": True,
        "expiresAt": _timestamp(status.expires_at),
        "expiresInSeconds": status.expires_in_seconds,
        "hasExpired": status.has_expired,
        "attemptCount": status.attempt_count,
        "attemptsRemaining": status.attempts_remaining,
        "isBlocked": status.is_blocked,
        "blockedUntil": _timestamp(status.blocked_until),
        "blockedUntilSeconds": status.blocked_until_seconds,
    }


@auth_bp.post("/verify")
def verify_token():
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer ") or not header[7:].strip():
        raise UnauthorizedError("missing or invalid authorization header")

    claims = _service().verify_token(header[7:].strip())
    return {"ok": True, "userId": claims["userId"], "email": claims["email"]}
