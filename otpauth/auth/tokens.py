from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from ..errors import UnauthorizedError

logger = logging.getLogger(__name__)


class TokenIssuer:
    def __init__(self, secret: str, *, algorithm: str = "HS256", expires_minutes: int = 7 * 24 * 60) -> None:
        if not secret:
            raise RuntimeError("JWT secret is not configured")
        self._secret = secret
        self._algorithm = algorithm
        self._expires_minutes = expires_minutes

    @classmethod
    def from_config(cls, config) -> "TokenIssuer":
        return cls(
            config.get("JWT_SECRET") or config["SECRET_KEY"],
            algorithm=config.get("JWT_ALGORITHM", "HS256"),
            expires_minutes=int(config.get("JWT_EXPIRES_MINUTES", 7 * 24 * 60)),
        )

    def issue(self, user_id: int, email: str, expires_delta: timedelta | None = None) -> str:
        now = datetime.now(timezone.utc)
        expire = now + (expires_delta if expires_delta is not None else timedelta(minutes=self._expires_minutes))
        claims = {"userId": user_id, "email": email, "iat": now, "exp": expire}
        return jwt.encode(claims, self._secret, algorithm=self._algorithm)

    def verify(self, token: str) -> dict:
        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except JWTError as exc:
            logger.warning("Token verification failed: %s", exc)
            raise UnauthorizedError("invalid or expired token") from exc
        if claims.get("userId") is None or not claims.get("email"):
            raise UnauthorizedError("invalid or expired token")
        return claims
