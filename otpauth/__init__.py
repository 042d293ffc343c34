from __future__ import annotations

import logging

from flask import Flask, request
from flask_limiter.errors import RateLimitExceeded
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from .auth.otp import OtpPolicy
from .auth.routes import auth_bp
from .auth.services import AuthService
from .auth.tokens import TokenIssuer
from .cli import register_commands
from .config import Config
from .db import close_db, init_db, utcnow
from .db_bootstrap import ensure_database_exists
from .email_service import init_email
from .errors import AuthError, ErrorKind, InternalError
from .extensions import limiter
from .logging_config import configure_logging

logger = logging.getLogger(__name__)


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    configure_logging(app)

    if app.config.get("AUTO_CREATE_DB"):
        ensure_database_exists(app.config["DATABASE_URL"])
    init_db(app)

    sender = init_email(app)
    limiter.init_app(app)

    app.extensions["auth_service"] = AuthService(
        app.extensions["db_sessionmaker"],
        sender,
        TokenIssuer.from_config(app.config),
        OtpPolicy.from_config(app.config),
        min_password_length=app.config["MIN_PASSWORD_LENGTH"],
    )

    app.register_blueprint(auth_bp, url_prefix="/auth")
    register_error_handlers(app)
    register_commands(app)

    @app.before_request
    def log_request():
        logger.info("Incoming request method=%s path=%s ip=%s", request.method, request.path, request.remote_addr)

    @app.get("/health")
    @limiter.exempt
    def health_check():
        return {"ok": True, "status": "OK", "timestamp": utcnow().isoformat() + "Z"}

    return app


def shutdown_app(app: Flask) -> None:
    sender = app.extensions.pop("email_sender", None)
    if sender is not None:
        sender.close()
    close_db(app)
    logger.info("Application resources released")


def _json_error(message: str, status_code: int, kind: ErrorKind, **extras):
    payload = {"ok": False, "error": message, "kind": kind.value}
    payload.update(extras)
    return payload, status_code


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(AuthError)
    def handle_auth_error(error: AuthError):
        return error.to_payload(), error.status_code

    @app.errorhandler(RateLimitExceeded)
    def handle_rate_limited(error: RateLimitExceeded):
        return _json_error("too many requests, try again later", 429, ErrorKind.RATE_LIMITED)

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        kind = ErrorKind.NOT_FOUND if error.code == 404 else ErrorKind.VALIDATION
        if error.code and error.code >= 500:
            kind = ErrorKind.INTERNAL
        return _json_error(error.description or error.name, error.code or 500, kind)

    @app.errorhandler(SQLAlchemyError)
    def handle_db_error(error: SQLAlchemyError):
        logger.exception("Database operation failed path=%s", request.path)
        return _internal_error(app, error)

    @app.errorhandler(Exception)
    def handle_unexpected(error: Exception):
        logger.exception("Unhandled error path=%s", request.path)
        return _internal_error(app, error)


def _internal_error(app: Flask, error: Exception):
    payload = InternalError().to_payload()
    if app.debug:
        payload["debug"] = str(error)
    return payload, 500
