from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from config import get_settings
from database import Base
from models import RefreshToken
from schemas import PasswordChangeIn, ProfileUpdateIn, RegisterIn
from services import (
    AuthenticationError,
    PasswordResetService,
    RefreshTokenService,
    UserService,
)
from tokens import generate_access_token, verify_access_token


NOW = datetime(2024, 5, 15, 12, 0)


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _register(session: Session, email: str = "Ana@Example.com"):
    return UserService(session).register(
        RegisterIn(email=email, password="segredo1", name="Ana")
    )


def test_register_normalizes_email_and_authenticates():
    with _session() as session:
        user = _register(session)
        users = UserService(session)

        assert user.email == "ana@example.com"
        assert user.password_hash != "segredo1"
        assert users.authenticate("ANA@example.com", "segredo1").id == user.id
        with pytest.raises(AuthenticationError):
            users.authenticate("ana@example.com", "errada")
        with pytest.raises(AuthenticationError):
            users.authenticate("nobody@example.com", "segredo1")


def test_register_rejects_duplicate_email():
    with _session() as session:
        _register(session)
        with pytest.raises(ValueError):
            _register(session, email="ana@example.com")


def test_profile_update_refuses_taken_email():
    with _session() as session:
        ana = _register(session)
        _register(session, email="bia@example.com")
        users = UserService(session)

        with pytest.raises(ValueError):
            users.update_profile(ana.id, ProfileUpdateIn(name="Ana", email="bia@example.com"))

        updated = users.update_profile(ana.id, ProfileUpdateIn(name="  Ana Maria "))
        assert updated.name == "Ana Maria"
        assert updated.email == "ana@example.com"


def test_change_password_requires_current_password():
    with _session() as session:
        user = _register(session)
        users = UserService(session)

        with pytest.raises(ValueError):
            users.change_password(
                user.id, PasswordChangeIn(current_password="x", new_password="novasenha")
            )
        users.change_password(
            user.id,
            PasswordChangeIn(current_password="segredo1", new_password="novasenha"),
        )
        assert users.authenticate(user.email, "novasenha").id == user.id


def test_access_token_round_trip_and_tamper():
    token = generate_access_token(42, "ana@example.com")
    assert verify_access_token(token) == 42
    assert verify_access_token(token + "x") is None
    assert verify_access_token("garbage") is None


def test_access_token_expires(monkeypatch):
    token = generate_access_token(42, "ana@example.com")
    monkeypatch.setattr(get_settings(), "access_token_ttl_secs", -1)
    assert verify_access_token(token) is None


def test_refresh_token_rotation_is_single_use():
    with _session() as session:
        user = _register(session)
        tokens = RefreshTokenService(session)

        first = tokens.issue(user.id, now=NOW)
        rotated_user, second = tokens.rotate(first, now=NOW + timedelta(hours=1))

        assert rotated_user.id == user.id
        assert second != first
        with pytest.raises(AuthenticationError):
            tokens.rotate(first, now=NOW + timedelta(hours=2))
        assert tokens.owner_of(second) == user.id


def test_expired_refresh_token_is_rejected_and_removed():
    with _session() as session:
        user = _register(session)
        tokens = RefreshTokenService(session)
        token = tokens.issue(user.id, now=NOW)

        with pytest.raises(AuthenticationError):
            tokens.rotate(token, now=NOW + timedelta(days=8))
        assert tokens.owner_of(token) is None


def test_reset_code_for_unknown_email_is_not_issued():
    with _session() as session:
        assert PasswordResetService(session).issue("ghost@example.com", NOW) is None


def test_reset_code_verification_and_expiry():
    with _session() as session:
        _register(session)
        resets = PasswordResetService(session)
        code = resets.issue("ana@example.com", now=NOW)

        assert len(code) == 6
        assert resets.verify("ANA@example.com", code, now=NOW + timedelta(minutes=5))
        wrong = "000000" if code != "000000" else "111111"
        assert not resets.verify("ana@example.com", wrong, now=NOW)
        assert not resets.verify("ana@example.com", code, now=NOW + timedelta(minutes=11))
        # Expired codes are dropped.
        assert not resets.verify("ana@example.com", code, now=NOW)


def test_reissuing_code_replaces_previous_one():
    with _session() as session:
        _register(session)
        resets = PasswordResetService(session)
        first = resets.issue("ana@example.com", now=NOW)
        second = resets.issue("ana@example.com", now=NOW)

        assert resets.verify("ana@example.com", second, now=NOW)
        if first != second:
            assert not resets.verify("ana@example.com", first, now=NOW)


def test_reset_changes_password_and_consumes_code():
    with _session() as session:
        user = _register(session)
        RefreshTokenService(session).issue(user.id, now=NOW)
        resets = PasswordResetService(session)
        code = resets.issue("ana@example.com", now=NOW)

        assert resets.reset("ana@example.com", code, "novasenha", now=NOW)

        assert UserService(session).authenticate("ana@example.com", "novasenha")
        assert not resets.reset("ana@example.com", code, "outra", now=NOW)
        remaining = session.execute(
            select(func.count(RefreshToken.id)).where(RefreshToken.user_id == user.id)
        ).scalar_one()
        assert remaining == 0
