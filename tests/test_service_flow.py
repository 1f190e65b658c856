"""
tests/test_service_flow.py -- AuthService end-to-end flows over in-memory stores.

Covers:
  - register -> verify -> login -> refresh (rotation) -> logout
  - Concurrent refreshes of one token: exactly one rotation wins
  - Duplicate identities, weak passwords, unknown accounts
  - Lockout through repeated bad logins, and the recent-lockout risk signal
  - Two-factor login with TOTP and with backup codes
  - Forgot/reset password (silent for unknown addresses, single-use tokens)
  - change_password alerts and the password-change risk rules
  - Profile, sessions, devices, activity, and the admin user listing
"""

from __future__ import annotations

import pyotp
import pytest

from audit.models import EventFilter, EventStatus, SecurityAction
from auth.models import Principal, TokenPair, User
from core.errors import (
    AccountLocked,
    ActionTokenInvalid,
    DuplicateIdentity,
    Forbidden,
    InvalidCredential,
    InvalidTransition,
    InvalidTwoFactorCode,
    NotFound,
    SessionRevoked,
    TwoFactorRequired,
    WeakPassword,
)

from conftest import OTHER_STRONG_PASSWORD, STRONG_PASSWORD, close_service, make_service, run_concurrently


def _principal(user: User) -> Principal:
    return Principal(user_id=user.id, email=user.email, role=user.role)


def _actions(service, user: User) -> list[SecurityAction]:
    """Every recorded action for user, oldest first."""
    page = service.events.query(EventFilter(user_id=user.id), page=1, limit=100)
    return [e.action for e in reversed(page.items)]


def _enable_2fa(service, user: User, device) -> list[str]:
    enrollment = service.begin_two_factor(_principal(user))
    code = pyotp.TOTP(enrollment.secret).at(service.clock())
    service.confirm_two_factor(_principal(user), code, device)
    return enrollment.backup_codes


# ---------------------------------------------------------------------------
# Registration, verification, login lifecycle
# ---------------------------------------------------------------------------


class TestAccountLifecycle:
    def test_register_verify_login_refresh_logout(self, service, notifier, device) -> None:
        user = service.register("New@Example.com", STRONG_PASSWORD, device, username="newbie", first_name="Nia")
        assert user.email == "new@example.com"
        assert not user.is_email_verified
        assert not service.verification_status(_principal(user))

        token = notifier.last_token("verification")
        service.verify_email(token, device)
        assert service.verification_status(_principal(user))
        with pytest.raises(ActionTokenInvalid):
            service.verify_email(token, device)

        result = service.login("new@example.com", STRONG_PASSWORD, device)
        assert result.user.id == user.id
        assert result.risk_score == 0
        assert not result.suspicious
        assert service.authenticate(result.tokens.access_token).user_id == user.id

        rotated = service.refresh(result.tokens.refresh_token)
        assert rotated.refresh_token != result.tokens.refresh_token
        with pytest.raises(SessionRevoked):
            service.refresh(result.tokens.refresh_token)

        assert service.logout(device, refresh_token=rotated.refresh_token) == 1
        with pytest.raises(SessionRevoked):
            service.refresh(rotated.refresh_token)

        assert _actions(service, user) == [
            SecurityAction.REGISTER,
            SecurityAction.EMAIL_VERIFICATION,
            SecurityAction.LOGIN,
            SecurityAction.SESSION_CREATED,
            SecurityAction.LOGOUT,
        ]

    def test_unverified_account_can_log_in(self, service, device) -> None:
        service.register("pending@example.com", STRONG_PASSWORD, device)
        assert service.login("pending@example.com", STRONG_PASSWORD, device).tokens.access_token

    def test_verification_token_expires(self, service, notifier, device, clock) -> None:
        service.register("late@example.com", STRONG_PASSWORD, device)
        clock.advance(hours=25)
        with pytest.raises(ActionTokenInvalid):
            service.verify_email(notifier.last_token("verification"), device)

    def test_resend_replaces_token(self, service, notifier, device) -> None:
        service.register("again@example.com", STRONG_PASSWORD, device)
        first = notifier.last_token("verification")
        service.resend_verification("AGAIN@example.com", device)
        second = notifier.last_token("verification")
        assert first != second
        with pytest.raises(ActionTokenInvalid):
            service.verify_email(first, device)
        assert service.verify_email(second, device).is_email_verified

    def test_resend_is_silent_for_unknown_and_verified(self, service, notifier, device, verified_user) -> None:
        service.resend_verification("nobody@example.com", device)
        service.resend_verification(verified_user.email, device)
        assert notifier.of_kind("verification") == []

    def test_duplicate_email_is_case_insensitive(self, service, device, verified_user) -> None:
        with pytest.raises(DuplicateIdentity) as exc_info:
            service.register("ALICE@example.com", OTHER_STRONG_PASSWORD, device)
        assert exc_info.value.field == "email"

    def test_duplicate_username(self, service, device) -> None:
        service.register("one@example.com", STRONG_PASSWORD, device, username="taken")
        with pytest.raises(DuplicateIdentity) as exc_info:
            service.register("two@example.com", STRONG_PASSWORD, device, username="taken")
        assert exc_info.value.field == "username"

    def test_weak_password_rejected(self, service, device) -> None:
        with pytest.raises(WeakPassword):
            service.register("weak@example.com", "password", device)
        assert service.users.get_by_email("weak@example.com") is None

    def test_logout_everywhere(self, service, device, other_device, verified_user) -> None:
        service.login(verified_user.email, STRONG_PASSWORD, device)
        service.login(verified_user.email, STRONG_PASSWORD, other_device)
        assert service.logout(device, principal=_principal(verified_user)) == 2
        assert service.list_sessions(_principal(verified_user)) == []

    def test_logout_of_someone_elses_session_is_a_noop(self, service, device, verified_user) -> None:
        other = service.provision_user("mallory@example.com", STRONG_PASSWORD)
        victim = service.login(verified_user.email, STRONG_PASSWORD, device)
        assert service.logout(device, refresh_token=victim.tokens.refresh_token, principal=_principal(other)) == 0
        assert len(service.list_sessions(_principal(verified_user))) == 1


# ---------------------------------------------------------------------------
# Failed logins and lockout
# ---------------------------------------------------------------------------


class TestLoginFailures:
    def test_unknown_email(self, service, device) -> None:
        with pytest.raises(InvalidCredential):
            service.login("ghost@example.com", STRONG_PASSWORD, device)
        failures = service.events.latest(EventFilter(email="ghost@example.com"), 10)
        assert len(failures) == 1
        assert failures[0].user_id is None
        assert failures[0].status is EventStatus.FAILURE

    def test_lockout_after_five_failures(self, service, device, verified_user) -> None:
        for _ in range(5):
            with pytest.raises(InvalidCredential):
                service.login(verified_user.email, "wrong-password", device)
        with pytest.raises(AccountLocked) as exc_info:
            service.login(verified_user.email, STRONG_PASSWORD, device)
        assert exc_info.value.locked_until is not None

        locked = service.events.count(
            EventFilter(user_id=verified_user.id, actions=(SecurityAction.ACCOUNT_LOCKED,))
        )
        assert locked == 1

    def test_login_after_lock_expires_carries_lockout_signal(self, service, device, verified_user, clock) -> None:
        for _ in range(5):
            with pytest.raises(InvalidCredential):
                service.login(verified_user.email, "wrong-password", device)
        clock.advance(minutes=31)
        result = service.login(verified_user.email, STRONG_PASSWORD, device)
        assert result.risk_score == 20
        stored = service.users.get_by_id(verified_user.id)
        assert stored.failed_attempts == 0
        assert stored.locked_until is None

    def test_locked_account_cannot_refresh(self, service, device, verified_user) -> None:
        result = service.login(verified_user.email, STRONG_PASSWORD, device)
        for _ in range(5):
            with pytest.raises(InvalidCredential):
                service.login(verified_user.email, "wrong-password", device)
        with pytest.raises(AccountLocked):
            service.refresh(result.tokens.refresh_token)
        with pytest.raises(AccountLocked):
            service.authenticate(result.tokens.access_token)

    def test_unlock_account(self, service, device, verified_user) -> None:
        for _ in range(5):
            with pytest.raises(InvalidCredential):
                service.login(verified_user.email, "wrong-password", device)
        service.unlock_account(verified_user.email)
        assert service.login(verified_user.email, STRONG_PASSWORD, device).tokens.access_token

    def test_unlock_unknown_account(self, service) -> None:
        with pytest.raises(NotFound):
            service.unlock_account("ghost@example.com")

    def test_suspicious_login_alerts(self, service, notifier, device, other_device, verified_user) -> None:
        service.login(verified_user.email, STRONG_PASSWORD, device)
        for _ in range(3):
            with pytest.raises(InvalidCredential):
                service.login(verified_user.email, "wrong-password", other_device)

        result = service.login(verified_user.email, STRONG_PASSWORD, other_device)
        # failed attempts 30 + new IP 25 + new browser 20
        assert result.risk_score == 75
        assert result.suspicious
        assert ("alert", verified_user.email, "Suspicious Login Detected") in notifier.sent
        assert SecurityAction.SUSPICIOUS_ACTIVITY in _actions(service, verified_user)


# ---------------------------------------------------------------------------
# Two-factor login
# ---------------------------------------------------------------------------


class TestTwoFactorLogin:
    def test_code_required(self, service, device, verified_user) -> None:
        _enable_2fa(service, verified_user, device)
        before = len(_actions(service, verified_user))
        with pytest.raises(TwoFactorRequired):
            service.login(verified_user.email, STRONG_PASSWORD, device)
        assert len(_actions(service, verified_user)) == before

    def test_totp_login(self, service, device, verified_user) -> None:
        _enable_2fa(service, verified_user, device)
        secret = service.users.get_by_id(verified_user.id).two_factor_secret
        result = service.login(verified_user.email, STRONG_PASSWORD, device, pyotp.TOTP(secret).at(service.clock()))
        assert result.tokens.access_token
        assert SecurityAction.TWO_FACTOR_VERIFIED in _actions(service, verified_user)

    def test_backup_code_login_is_single_use(self, service, device, verified_user) -> None:
        codes = _enable_2fa(service, verified_user, device)
        service.login(verified_user.email, STRONG_PASSWORD, device, codes[0])
        with pytest.raises(InvalidTwoFactorCode):
            service.login(verified_user.email, STRONG_PASSWORD, device, codes[0])

    def test_bad_code_does_not_lock(self, service, device, verified_user) -> None:
        _enable_2fa(service, verified_user, device)
        for _ in range(6):
            with pytest.raises(InvalidTwoFactorCode):
                service.login(verified_user.email, STRONG_PASSWORD, device, "000000x")
        assert service.users.get_by_id(verified_user.id).failed_attempts == 0

    def test_enable_sends_alert(self, service, notifier, device, verified_user) -> None:
        _enable_2fa(service, verified_user, device)
        assert ("alert", verified_user.email, "2FA Enabled") in notifier.sent
        assert service.two_factor_status(_principal(verified_user)).enabled

    def test_confirm_with_wrong_code(self, service, device, verified_user) -> None:
        service.begin_two_factor(_principal(verified_user))
        with pytest.raises(InvalidTwoFactorCode):
            service.confirm_two_factor(_principal(verified_user), "abcdef", device)

    def test_disable_requires_password_and_code(self, service, device, verified_user) -> None:
        _enable_2fa(service, verified_user, device)
        secret = service.users.get_by_id(verified_user.id).two_factor_secret
        code = pyotp.TOTP(secret).at(service.clock())
        with pytest.raises(InvalidCredential):
            service.disable_two_factor(_principal(verified_user), "wrong", code, device)
        with pytest.raises(InvalidTwoFactorCode):
            service.disable_two_factor(_principal(verified_user), STRONG_PASSWORD, "abcdef", device)
        service.disable_two_factor(_principal(verified_user), STRONG_PASSWORD, code, device)
        assert not service.two_factor_status(_principal(verified_user)).enabled
        with pytest.raises(InvalidTransition):
            service.disable_two_factor(_principal(verified_user), STRONG_PASSWORD, code, device)

    def test_regenerate_backup_codes(self, service, device, verified_user) -> None:
        old = _enable_2fa(service, verified_user, device)
        with pytest.raises(InvalidCredential):
            service.regenerate_backup_codes(_principal(verified_user), "wrong", device)
        new = service.regenerate_backup_codes(_principal(verified_user), STRONG_PASSWORD, device)
        assert set(new).isdisjoint(old)
        with pytest.raises(InvalidTwoFactorCode):
            service.login(verified_user.email, STRONG_PASSWORD, device, old[0])


# ---------------------------------------------------------------------------
# Password reset and change
# ---------------------------------------------------------------------------


class TestPasswords:
    def test_forgot_password_is_silent_for_unknown(self, service, notifier, device) -> None:
        assert service.forgot_password("ghost@example.com", device) is None
        assert notifier.of_kind("password_reset") == []

    def test_reset_flow(self, service, notifier, device, verified_user) -> None:
        service.forgot_password(verified_user.email, device)
        token = notifier.last_token("password_reset")
        service.reset_password(token, OTHER_STRONG_PASSWORD, device)

        assert notifier.of_kind("password_changed")
        assert ("alert", verified_user.email, "Password Reset") in notifier.sent
        with pytest.raises(ActionTokenInvalid):
            service.reset_password(token, "Yet4n0ther!Pass", device)
        with pytest.raises(InvalidCredential):
            service.login(verified_user.email, STRONG_PASSWORD, device)
        assert service.login(verified_user.email, OTHER_STRONG_PASSWORD, device)

    def test_reset_token_expires(self, service, notifier, device, verified_user, clock) -> None:
        service.forgot_password(verified_user.email, device)
        clock.advance(minutes=61)
        with pytest.raises(ActionTokenInvalid):
            service.reset_password(notifier.last_token("password_reset"), OTHER_STRONG_PASSWORD, device)

    def test_reset_clears_lockout(self, service, notifier, device, verified_user) -> None:
        for _ in range(5):
            with pytest.raises(InvalidCredential):
                service.login(verified_user.email, "wrong-password", device)
        service.forgot_password(verified_user.email, device)
        service.reset_password(notifier.last_token("password_reset"), OTHER_STRONG_PASSWORD, device)
        assert service.login(verified_user.email, OTHER_STRONG_PASSWORD, device)

    def test_reset_rejects_weak_password(self, service, notifier, device, verified_user) -> None:
        service.forgot_password(verified_user.email, device)
        with pytest.raises(WeakPassword):
            service.reset_password(notifier.last_token("password_reset"), "short", device)

    def test_change_password(self, service, notifier, device, verified_user) -> None:
        service.login(verified_user.email, STRONG_PASSWORD, device)
        service.change_password(_principal(verified_user), STRONG_PASSWORD, OTHER_STRONG_PASSWORD, device)
        assert ("alert", verified_user.email, "Password Changed") in notifier.sent
        assert SecurityAction.SUSPICIOUS_ACTIVITY not in _actions(service, verified_user)
        assert service.login(verified_user.email, OTHER_STRONG_PASSWORD, device)

    def test_change_password_wrong_current(self, service, device, verified_user) -> None:
        with pytest.raises(InvalidCredential):
            service.change_password(_principal(verified_user), "wrong", OTHER_STRONG_PASSWORD, device)
        failures = service.events.count(
            EventFilter(
                user_id=verified_user.id, actions=(SecurityAction.PASSWORD_CHANGE,), status=EventStatus.FAILURE
            )
        )
        assert failures == 1

    def test_change_password_from_new_ip_is_flagged(self, service, device, other_device, verified_user) -> None:
        service.login(verified_user.email, STRONG_PASSWORD, device)
        service.change_password(_principal(verified_user), STRONG_PASSWORD, OTHER_STRONG_PASSWORD, other_device)
        flagged = service.events.latest(
            EventFilter(user_id=verified_user.id, actions=(SecurityAction.SUSPICIOUS_ACTIVITY,)), 10
        )
        assert len(flagged) == 1
        assert "new IP" in flagged[0].details

    def test_check_password_strength(self, service) -> None:
        assert service.check_password_strength("abc").is_weak
        assert service.check_password_strength(STRONG_PASSWORD).band == "very-strong"


# ---------------------------------------------------------------------------
# Profile, sessions, devices, activity, admin
# ---------------------------------------------------------------------------


class TestAccountManagement:
    def test_update_profile(self, service, device, verified_user) -> None:
        updated = service.update_profile(_principal(verified_user), device, username="alice", first_name="Alice")
        assert (updated.username, updated.first_name) == ("alice", "Alice")
        assert service.get_profile(_principal(verified_user)).display_name == "Alice"

    def test_update_profile_duplicate_username(self, service, device, verified_user) -> None:
        other = service.provision_user("bob@example.com", STRONG_PASSWORD)
        service.update_profile(_principal(other), device, username="bob")
        with pytest.raises(DuplicateIdentity):
            service.update_profile(_principal(verified_user), device, username="bob")

    def test_sessions(self, service, device, other_device, verified_user) -> None:
        current = service.login(verified_user.email, STRONG_PASSWORD, device)
        service.login(verified_user.email, STRONG_PASSWORD, other_device)
        principal = _principal(verified_user)
        assert len(service.list_sessions(principal)) == 2

        assert service.revoke_other_sessions(principal, current.tokens.refresh_token, device) == 1
        assert [s.id for s in service.list_sessions(principal)] == [current.session_id]

        service.revoke_session(principal, current.session_id, device)
        with pytest.raises(NotFound):
            service.revoke_session(principal, current.session_id, device)

    def test_cannot_revoke_another_users_session(self, service, device, verified_user) -> None:
        victim = service.login(verified_user.email, STRONG_PASSWORD, device)
        other = service.provision_user("mallory@example.com", STRONG_PASSWORD)
        with pytest.raises(NotFound):
            service.revoke_session(_principal(other), victim.session_id, device)

    def test_devices(self, service, device, other_device, verified_user) -> None:
        service.login(verified_user.email, STRONG_PASSWORD, device)
        service.login(verified_user.email, STRONG_PASSWORD, other_device)
        principal = _principal(verified_user)
        assert len(service.list_devices(principal)) == 2

        service.trust_device(principal, device.device_id, device)
        trusted = {d.device_id: d.is_trusted for d in service.list_devices(principal)}
        assert trusted == {device.device_id: True, other_device.device_id: False}

        assert service.revoke_device(principal, other_device.device_id, device) == 1
        assert [d.device_id for d in service.list_devices(principal)] == [device.device_id]
        assert len(service.list_sessions(principal)) == 1

        with pytest.raises(NotFound):
            service.revoke_device(principal, other_device.device_id, device)
        with pytest.raises(NotFound):
            service.trust_device(principal, "missing", device)

    def test_revoke_other_devices(self, service, device, other_device, verified_user) -> None:
        service.login(verified_user.email, STRONG_PASSWORD, device)
        service.login(verified_user.email, STRONG_PASSWORD, other_device)
        assert service.revoke_other_devices(_principal(verified_user), device) == (1, 1)

    def test_activity_is_paginated_and_clamped(self, service, device, verified_user) -> None:
        for _ in range(3):
            service.login(verified_user.email, STRONG_PASSWORD, device)
        page = service.activity(_principal(verified_user), page=1, limit=4)
        assert page.total == 6
        assert len(page.items) == 4
        assert page.items[0].action is SecurityAction.SESSION_CREATED
        assert service.activity(_principal(verified_user), page=0, limit=1000).limit == 100

    def test_security_summary(self, service, device, verified_user) -> None:
        service.login(verified_user.email, STRONG_PASSWORD, device)
        with pytest.raises(InvalidCredential):
            service.login(verified_user.email, "wrong-password", device)
        summary = service.security_summary(_principal(verified_user))
        assert summary.successful_logins == 1
        assert summary.failed_logins == 1

    def test_list_users_requires_admin(self, service, verified_user) -> None:
        with pytest.raises(Forbidden):
            service.list_users(_principal(verified_user))
        admin = service.provision_user("root@example.com", STRONG_PASSWORD, role="admin")
        assert {u.email for u in service.list_users(_principal(admin))} == {verified_user.email, admin.email}

    def test_provision_rejects_unknown_role(self, service) -> None:
        with pytest.raises(ValueError):
            service.provision_user("x@example.com", STRONG_PASSWORD, role="superuser")

    def test_sweep_expired_sessions(self, service, device, verified_user, clock) -> None:
        service.login(verified_user.email, STRONG_PASSWORD, device)
        clock.advance(days=8)
        assert service.sweep_expired_sessions() == 1


def test_concurrent_refreshes_rotate_once(file_db_url, clock, notifier, device) -> None:
    service = make_service(file_db_url, clock, notifier)
    try:
        user = service.provision_user("race@example.com", STRONG_PASSWORD)
        refresh_token = service.login(user.email, STRONG_PASSWORD, device).tokens.refresh_token

        results = run_concurrently(lambda: service.refresh(refresh_token), workers=6)

        winners = [r for r in results if isinstance(r, TokenPair)]
        assert len(winners) == 1
        assert all(isinstance(r, SessionRevoked) for r in results if r is not winners[0])
        assert service.refresh(winners[0].refresh_token).refresh_token
    finally:
        close_service(service)
