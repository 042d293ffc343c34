from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from otpauth.auth import otp
from otpauth.auth.hashing import compare_code, hash_code
from otpauth.auth.otp import (
    CODE_FORMAT_ERROR,
    claim_session,
    cleanup_expired_sessions,
    create_session,
    delete_session,
    generate_code,
    get_session_status,
    is_valid_code_format,
    seconds_until,
    verify_session,
)
from otpauth.db import utcnow
from otpauth.errors import (
    BlockedError,
    NotFoundError,
    OtpExpiredError,
    OtpInvalidError,
    ValidationError,
)
from otpauth.models import OtpSession


def _wrong(code: str) -> str:
    return f"{(int(code) + 1) % 10 ** 10:010d}"


def _issue(db_session, policy, email="a@b.com", purpose="login"):
    code, view = create_session(db_session, email=email, purpose=purpose, policy=policy)
    db_session.commit()
    return code, view


def _verify(db_session, policy, code, email="a@b.com", purpose="login", **kwargs):
    return verify_session(db_session, email=email, purpose=purpose, code=code, policy=policy, **kwargs)


def test_generate_code_format():
    code = generate_code()
    assert code.isdigit()
    assert len(code) == 10
    assert is_valid_code_format(code)


@pytest.mark.parametrize("value", ["", "123456", "12345678901", "12345abcde", None, 1234567890])
def test_invalid_code_formats(value):
    assert not is_valid_code_format(value)


def test_hash_code_is_deterministic():
    assert hash_code("1234567890", "secret") == hash_code("1234567890", "secret")
    assert hash_code("1234567890", "secret") != hash_code("1234567890", "other")


def test_code_compares_against_own_hash_only():
    code = generate_code()
    stored = hash_code(code, "secret")
    assert compare_code(code, stored, "secret")
    assert not compare_code(_wrong(code), stored, "secret")


def test_seconds_until_floors_at_zero():
    now = utcnow()
    assert seconds_until(None, now) == 0
    assert seconds_until(now - timedelta(seconds=30), now) == 0
    assert seconds_until(now + timedelta(seconds=90), now) == 90


def test_fresh_session_status(db_session, policy):
    code, view = _issue(db_session, policy)
    assert is_valid_code_format(code)
    assert 895 <= view.expires_in_seconds <= 900

    status = get_session_status(db_session, email="a@b.com", purpose="login", policy=policy)
    assert status.attempt_count == 0
    assert status.attempts_remaining == 3
    assert status.is_blocked is False
    assert status.blocked_until is None
    assert status.has_expired is False
    assert status.expires_in_seconds > 0


def test_plaintext_code_is_not_stored(db_session, policy):
    code, _ = _issue(db_session, policy)
    record = db_session.execute(select(OtpSession)).scalar_one()
    assert record.otp_hash != code
    assert code not in record.otp_hash


def test_correct_code_verifies(db_session, policy):
    code, _ = _issue(db_session, policy)
    record = _verify(db_session, policy, code)
    assert record.email == "a@b.com"
    assert record.purpose == "login"


def test_wrong_codes_count_down_then_block(db_session, policy):
    code, _ = _issue(db_session, policy)

    remaining = []
    for _ in range(3):
        with pytest.raises(OtpInvalidError) as exc:
            _verify(db_session, policy, _wrong(code))
        remaining.append(exc.value.attempts_remaining)
    assert remaining == [2, 1, 0]

    status = get_session_status(db_session, email="a@b.com", purpose="login", policy=policy)
    assert status.attempt_count == 3
    assert status.attempts_remaining == 0
    assert status.is_blocked is True
    assert 295 <= status.blocked_until_seconds <= 300


def test_blocked_session_rejects_correct_code(db_session, policy):
    code, _ = _issue(db_session, policy)
    for _ in range(3):
        with pytest.raises(OtpInvalidError):
            _verify(db_session, policy, _wrong(code))

    with pytest.raises(BlockedError) as exc:
        _verify(db_session, policy, code)
    assert exc.value.retry_after_seconds > 0

    status = get_session_status(db_session, email="a@b.com", purpose="login", policy=policy)
    assert status.attempt_count == 3


def test_cooldown_lapse_allows_correct_code(db_session, policy):
    code, _ = _issue(db_session, policy)
    for _ in range(3):
        with pytest.raises(OtpInvalidError):
            _verify(db_session, policy, _wrong(code))

    later = utcnow() + timedelta(minutes=6)
    record = _verify(db_session, policy, code, now=later)
    assert record.attempt_count == 3


def test_wrong_code_after_cooldown_blocks_again(db_session, policy):
    code, _ = _issue(db_session, policy)
    for _ in range(3):
        with pytest.raises(OtpInvalidError):
            _verify(db_session, policy, _wrong(code))

    later = utcnow() + timedelta(minutes=6)
    with pytest.raises(OtpInvalidError) as exc:
        _verify(db_session, policy, _wrong(code), now=later)
    assert exc.value.attempts_remaining == 0

    status = get_session_status(db_session, email="a@b.com", purpose="login", policy=policy, now=later)
    assert status.attempt_count == 4
    assert status.is_blocked is True


def test_expired_session_rejected_and_removed(db_session, policy):
    code, _ = _issue(db_session, policy)
    db_session.execute(
        update(OtpSession)
        .where(OtpSession.email == "a@b.com")
        .values(expires_at=utcnow() - timedelta(seconds=1))
    )
    db_session.commit()

    with pytest.raises(OtpExpiredError):
        _verify(db_session, policy, code)

    assert get_session_status(db_session, email="a@b.com", purpose="login", policy=policy) is None


def test_expiry_wins_over_block(db_session, policy):
    code, _ = _issue(db_session, policy)
    for _ in range(3):
        with pytest.raises(OtpInvalidError):
            _verify(db_session, policy, _wrong(code))

    with pytest.raises(OtpExpiredError):
        _verify(db_session, policy, code, now=utcnow() + timedelta(minutes=16))


def test_missing_session_not_found(db_session, policy):
    with pytest.raises(NotFoundError):
        _verify(db_session, policy, "1234567890", email="nobody@example.com")


def test_malformed_code_rejected_before_lookup(db_session, policy):
    with pytest.raises(ValidationError):
        _verify(db_session, policy, "12345", email="nobody@example.com")


def test_unknown_purpose_rejected(db_session, policy):
    with pytest.raises(ValidationError):
        create_session(db_session, email="a@b.com", purpose="reset", policy=policy)


def test_sessions_are_scoped_by_purpose(db_session, policy):
    login_code, _ = _issue(db_session, policy, purpose="login")
    _issue(db_session, policy, purpose="registration")

    with pytest.raises(OtpInvalidError):
        _verify(db_session, policy, login_code, purpose="registration")
    assert _verify(db_session, policy, login_code, purpose="login")


def test_new_session_replaces_previous(db_session, policy):
    old_code, _ = _issue(db_session, policy)
    new_code, _ = _issue(db_session, policy)

    count = db_session.execute(select(func.count()).select_from(OtpSession)).scalar_one()
    assert count == 1

    if old_code != new_code:
        with pytest.raises(OtpInvalidError):
            _verify(db_session, policy, old_code)
    assert _verify(db_session, policy, new_code)


def test_claim_succeeds_once(db_session, policy):
    code, _ = _issue(db_session, policy)
    record = _verify(db_session, policy, code)

    assert claim_session(db_session, record) is True
    assert claim_session(db_session, record) is False
    db_session.commit()

    with pytest.raises(NotFoundError):
        _verify(db_session, policy, code)


def test_delete_session_is_idempotent(db_session, policy):
    _issue(db_session, policy)
    assert delete_session(db_session, "a@b.com", "login") == 1
    assert delete_session(db_session, "a@b.com", "login") == 0
    db_session.commit()
    assert get_session_status(db_session, email="a@b.com", purpose="login", policy=policy) is None


def test_concurrent_attempt_is_not_lost(app, db_session, policy, monkeypatch):
    code, _ = _issue(db_session, policy)
    original = otp.get_latest_session
    calls = {"count": 0}

    def racing_get_latest(session, email, purpose):
        record = original(session, email, purpose)
        calls["count"] += 1
        if calls["count"] == 1:
            # another request records a failed attempt between our read and write
            other = app.extensions["db_sessionmaker"]()
            try:
                other.execute(
                    update(OtpSession)
                    .where(OtpSession.id == record.id)
                    .values(attempt_count=OtpSession.attempt_count + 1)
                )
                other.commit()
            finally:
                other.close()
        return record

    monkeypatch.setattr(otp, "get_latest_session", racing_get_latest)

    with pytest.raises(OtpInvalidError) as exc:
        _verify(db_session, policy, _wrong(code))

    assert calls["count"] == 2
    assert exc.value.attempts_remaining == 1
    status = get_session_status(db_session, email="a@b.com", purpose="login", policy=policy)
    assert status.attempt_count == 2


def test_cleanup_removes_only_expired(db_session, policy):
    _issue(db_session, policy, email="fresh@example.com")
    _issue(db_session, policy, email="stale@example.com")
    db_session.execute(
        update(OtpSession)
        .where(OtpSession.email == "stale@example.com")
        .values(expires_at=utcnow() - timedelta(minutes=1))
    )
    db_session.commit()

    assert cleanup_expired_sessions(db_session) == 1
    db_session.commit()
    emails = db_session.execute(select(OtpSession.email)).scalars().all()
    assert emails == ["fresh@example.com"]


def test_last_allowed_attempt_sets_block(db_session, policy):
    now = utcnow()
    record = OtpSession(
        email="user2@example.com",
        purpose="registration",
        otp_hash=hash_code("1234567890", policy.secret),
        attempt_count=2,
        blocked_until=None,
        expires_at=now + timedelta(minutes=15),
        created_at=now,
        updated_at=now,
    )
    db_session.add(record)
    db_session.commit()

    with pytest.raises(OtpInvalidError) as exc:
        _verify(db_session, policy, "0000000000", email="user2@example.com", purpose="registration")
    assert exc.value.attempts_remaining == 0

    db_session.refresh(record)
    assert record.attempt_count == 3
    assert record.blocked_until is not None


@pytest.mark.parametrize("code", ["١" * 10, "1234567890\n", "１２３４５６７８９０"])
def test_non_ascii_or_padded_codes_do_not_cost_attempts(db_session, policy, code):
    _issue(db_session, policy)
    assert not is_valid_code_format(code)

    with pytest.raises(ValidationError) as exc:
        _verify(db_session, policy, code)
    assert exc.value.message == CODE_FORMAT_ERROR

    status = get_session_status(db_session, email="a@b.com", purpose="login", policy=policy)
    assert status.attempt_count == 0
