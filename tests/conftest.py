import os

import pytest
from sqlalchemy import text

from otpauth import create_app, shutdown_app
from otpauth.auth.hashing import hash_password
from otpauth.db import get_session
from otpauth.models import User

TEST_SECRET = "test-secret"


def build_config(tmp_path, **overrides):
    test_db_url = os.getenv("TEST_DATABASE_URL") or f"sqlite:///{tmp_path / 'test.db'}"
    config = {
        "TESTING": True,
        "DATABASE_URL": test_db_url,
        "AUTO_CREATE_DB": True,
        "EMAIL_BACKEND": "memory",
        "SECRET_KEY": TEST_SECRET,
        "JWT_SECRET": "test-jwt-secret",
        "OTP_EXPIRY_MINUTES": 15,
        "OTP_RESEND_COOLDOWN_MINUTES": 5,
        "OTP_MAX_ATTEMPTS": 3,
        "MIN_PASSWORD_LENGTH": 6,
        "RATELIMIT_ENABLED": False,
        "RATELIMIT_STORAGE_URI": "memory://",
    }
    config.update(overrides)
    return config


@pytest.fixture
def app(tmp_path):
    app = create_app(build_config(tmp_path))
    yield app
    shutdown_app(app)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def outbox(app):
    return app.extensions["email_outbox"]


@pytest.fixture
def auth_service(app):
    return app.extensions["auth_service"]


@pytest.fixture
def policy(auth_service):
    return auth_service.policy


@pytest.fixture
def db_session(app):
    with app.app_context():
        session = get_session()
        try:
            session.execute(text("DELETE FROM otp_sessions"))
            session.execute(text("DELETE FROM pending_registrations"))
            session.execute(text("DELETE FROM users"))
            session.commit()
            yield session
        finally:
            session.close()


@pytest.fixture
def make_user(db_session):
    def _make_user(email="login@example.com", password="password123", phone="5551234567", is_active=True):
        user = User(
            email=email,
            phone=phone,
            password_hash=hash_password(password),
            is_email_verified=True,
            is_active=is_active,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make_user
