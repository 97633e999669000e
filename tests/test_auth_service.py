from dataclasses import replace

import pytest
from sqlalchemy import func, select

from rentalhub.errors import (
    ConflictError,
    DatabaseError,
    InvalidOrExpiredOTP,
    NotFoundError,
    NotificationDeliveryFailed,
    SessionInactive,
)
from rentalhub.models.business import BusinessEntry
from rentalhub.models.user import UserEntry
from rentalhub.services.otp import OtpType


def _count(database, model):
    with database.session_scope() as session:
        return session.execute(select(func.count()).select_from(model)).scalar_one()


def test_send_otp_returns_id_not_code(services, mailer):
    sent = services.auth.send_otp("asha@acme.test", OtpType.LOGIN, "10.0.0.1")
    assert sent.otp_id
    assert not hasattr(sent, "code")
    to_email, message = mailer.sent[-1]
    assert to_email == "asha@acme.test"
    assert mailer.last_code() in message.body


def test_send_otp_delivery_failure(services, mailer):
    mailer.fail_with = RuntimeError("smtp down")
    with pytest.raises(NotificationDeliveryFailed) as excinfo:
        services.auth.send_otp("asha@acme.test", OtpType.LOGIN)
    assert excinfo.value.status_code == 503


def test_send_otp_retry_after_delivery_failure(services, mailer):
    mailer.fail_with = RuntimeError("smtp down")
    with pytest.raises(NotificationDeliveryFailed):
        services.auth.send_otp("asha@acme.test", OtpType.LOGIN)
    mailer.fail_with = None
    sent = services.auth.send_otp("asha@acme.test", OtpType.LOGIN)
    assert sent.otp_id
    assert services.auth.verify_otp("asha@acme.test", mailer.last_code(), OtpType.LOGIN) == sent.otp_id


def test_login_happy_path(services, owner, mailer):
    principal, _ = owner
    services.auth.send_otp("asha@acme.test", OtpType.LOGIN)
    result = services.auth.login_with_otp(
        "asha@acme.test",
        mailer.last_code(),
        OtpType.LOGIN,
        ip_address="10.0.0.1",
        user_agent="pytest",
        device_id="counter-1",
    )
    assert result.access_token and result.session_token
    decoded = services.access_tokens.verify(result.access_token)
    assert decoded.email == "asha@acme.test"
    assert decoded == principal
    session = services.sessions.validate_session(result.session_token, expected_user_id=principal.user_id)
    assert session.device_id == "counter-1"
    assert session.user_agent == "pytest"


def test_send_verify_then_login(services, owner, mailer):
    principal, _ = owner
    services.auth.send_otp("asha@acme.test", OtpType.LOGIN)
    code = mailer.last_code()
    services.auth.verify_otp("asha@acme.test", code, OtpType.LOGIN)
    result = services.auth.login_with_otp("asha@acme.test", code, OtpType.LOGIN)
    assert result.access_token and result.session_token
    assert services.access_tokens.verify(result.access_token).user_id == principal.user_id
    with pytest.raises(InvalidOrExpiredOTP):
        services.auth.verify_otp("asha@acme.test", code, OtpType.LOGIN)
    with pytest.raises(InvalidOrExpiredOTP):
        services.auth.login_with_otp("asha@acme.test", code, OtpType.LOGIN)


def test_login_consumes_the_code(services, owner, mailer):
    services.auth.send_otp("asha@acme.test", OtpType.LOGIN)
    code = mailer.last_code()
    services.auth.login_with_otp("asha@acme.test", code, OtpType.LOGIN)
    with pytest.raises(InvalidOrExpiredOTP):
        services.auth.login_with_otp("asha@acme.test", code, OtpType.LOGIN)


def test_login_unknown_user(services, mailer):
    services.auth.send_otp("ghost@acme.test", OtpType.LOGIN)
    with pytest.raises(NotFoundError):
        services.auth.login_with_otp("ghost@acme.test", mailer.last_code(), OtpType.LOGIN)


def test_login_survives_session_failure(services, owner, mailer, monkeypatch):
    def broken(*args, **kwargs):
        raise DatabaseError("Failed to create session")

    monkeypatch.setattr(services.sessions, "create_session", broken)
    services.auth.send_otp("asha@acme.test", OtpType.LOGIN)
    result = services.auth.login_with_otp("asha@acme.test", mailer.last_code(), OtpType.LOGIN)
    assert result.access_token
    assert result.session_token is None
    assert result.session_expires_at is None


def test_registration_creates_business_branch_owner(services, registration, database):
    result = services.auth.complete_registration(registration)
    principal = services.accounts.get_principal_by_email("asha@acme.test")
    assert principal.user_id == result.owner_id
    assert principal.business_id == result.business_id
    assert principal.branch_id == result.branch_id
    assert principal.is_owner is True
    assert principal.business_name == "Acme Rentals"


def test_duplicate_registration_creates_nothing(services, registration, database):
    services.auth.complete_registration(registration)
    businesses, users = _count(database, BusinessEntry), _count(database, UserEntry)
    clash = replace(registration, business_email="new@acme.test", owner_email="office@acme.test")
    with pytest.raises(ConflictError) as excinfo:
        services.auth.complete_registration(clash)
    assert excinfo.value.status_code == 409
    assert (_count(database, BusinessEntry), _count(database, UserEntry)) == (businesses, users)


def test_logout_with_session_token(services, owner):
    principal, _ = owner
    issued = services.sessions.create_session(principal.user_id, "laptop")
    assert services.auth.logout(principal.user_id, issued.session_token) is True
    assert services.auth.logout(principal.user_id, issued.session_token) is False
    with pytest.raises(SessionInactive):
        services.sessions.validate_session(issued.session_token)


def test_logout_without_session_token_ends_every_session(services, owner):
    principal, _ = owner
    first = services.sessions.create_session(principal.user_id, "laptop")
    second = services.sessions.create_session(principal.user_id, "phone")
    assert services.auth.logout(principal.user_id) is True
    for issued in (first, second):
        with pytest.raises(SessionInactive):
            services.sessions.validate_session(issued.session_token)


def test_access_token_survives_logout(services, owner):
    principal, _ = owner
    access = services.access_tokens.issue(principal)
    services.auth.logout(principal.user_id)
    assert services.access_tokens.verify(access.token).user_id == principal.user_id
