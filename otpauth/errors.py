"""Error kinds raised by the OTP engine and the auth service.

Every error carries a stable machine-readable ``kind`` and the HTTP status the
API answers with, so handlers never have to inspect message text.
"""
from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation_error"
    CONFLICT = "conflict"
    UNAUTHORIZED = "unauthorized"
    OTP_INVALID = "otp_invalid"
    OTP_EXPIRED = "otp_expired"
    BLOCKED = "blocked"
    TOO_SOON = "too_soon"
    NOT_FOUND = "not_found"
    DELIVERY = "delivery_error"
    RATE_LIMITED = "rate_limited"
    INTERNAL = "internal_error"


class AuthError(Exception):
    kind = ErrorKind.INTERNAL
    status_code = 500
    default_message = "internal server error"

    def __init__(self, message: str | None = None, **extras) -> None:
        self.message = message or self.default_message
        self.extras = extras
        super().__init__(self.message)

    def to_payload(self) -> dict:
        payload = {"ok": False, "error": self.message, "kind": self.kind.value}
        payload.update(self.extras)
        return payload


class ValidationError(AuthError):
    kind = ErrorKind.VALIDATION
    status_code = 400
    default_message = "validation failed"


class ConflictError(AuthError):
    kind = ErrorKind.CONFLICT
    status_code = 409
    default_message = "email already exists"


class UnauthorizedError(AuthError):
    kind = ErrorKind.UNAUTHORIZED
    status_code = 401
    default_message = "unauthorized"


class OtpInvalidError(AuthError):
    kind = ErrorKind.OTP_INVALID
    status_code = 400

    def __init__(self, attempts_remaining: int) -> None:
        self.attempts_remaining = attempts_remaining
        super().__init__(
            f"invalid code, {attempts_remaining} attempts remaining",
            attemptsRemaining=attempts_remaining,
        )


class OtpExpiredError(AuthError):
    kind = ErrorKind.OTP_EXPIRED
    status_code = 400
    default_message = "code has expired, request a new one"


class BlockedError(AuthError):
    kind = ErrorKind.BLOCKED
    status_code = 429

    def __init__(self, retry_after_seconds: int) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            "too many attempts, try later",
            retryAfterSeconds=retry_after_seconds,
        )


class TooSoonError(AuthError):
    kind = ErrorKind.TOO_SOON
    status_code = 429

    def __init__(self, retry_after_seconds: int) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            "current code is still valid, wait before requesting a new one",
            retryAfterSeconds=retry_after_seconds,
        )


class NotFoundError(AuthError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404
    default_message = "not found"


class DeliveryError(AuthError):
    kind = ErrorKind.DELIVERY
    status_code = 502
    default_message = "could not deliver the verification email"


class InternalError(AuthError):
    pass
