from __future__ import annotations

from flask import request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address


def email_or_remote_address() -> str:
    """Key auth limits on the submitted email, falling back to the client address."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = request.form
    email = data.get("email")
    if isinstance(email, str) and email.strip():
        return f"email:{email.strip().lower()}"
    return get_remote_address()


# Shared limiter; storage and the enabled flag come from RATELIMIT_* config.
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["10 per minute"],
    default_limits_exempt_when=lambda: request.method == "GET",
)

AUTH_LIMIT = "5 per minute"
OTP_LIMIT = "3 per 5 minutes"
