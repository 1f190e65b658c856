"""
tests/test_two_factor.py -- Two-Factor Verifier state machine and backup codes.

Covers:
  - disabled -> pending -> enabled -> disabled transitions
  - Invalid transitions: enabling twice, confirming without a pending secret
  - TOTP verification inside and outside the accepted window
  - Backup codes: formatting tolerance, single use, regeneration replaces the set
  - A backup code raced by concurrent logins is accepted exactly once
"""

from __future__ import annotations

from datetime import timedelta

import pyotp
import pytest

from auth.models import User
from auth.store import UserStore
from auth.two_factor import TwoFactorVerifier
from core.errors import InvalidTransition

from conftest import run_concurrently

KEY = "k" * 64


@pytest.fixture
def verifier(user_store, clock) -> TwoFactorVerifier:
    return TwoFactorVerifier(user_store, token_key=KEY, issuer="VaultPass", valid_window=2, clock=clock)


@pytest.fixture
def account(user_store) -> User:
    user = User(email="carol@example.com", hashed_password="unused")
    user.id = user_store.create_user(user)
    return user_store.get_by_id(user.id)


def _code(secret: str, clock, **shift) -> str:
    return pyotp.TOTP(secret).at(clock() + timedelta(**shift))


def _enable(verifier: TwoFactorVerifier, account: User, clock) -> list[str]:
    enrollment = verifier.begin_enrollment(account)
    assert verifier.confirm_enrollment(account, _code(enrollment.secret, clock))
    return enrollment.backup_codes


class TestEnrollment:
    def test_begin_returns_secret_uri_and_codes(self, verifier, account, user_store) -> None:
        enrollment = verifier.begin_enrollment(account)
        assert len(enrollment.secret) == 32
        assert enrollment.provisioning_uri.startswith("otpauth://totp/")
        assert "issuer=VaultPass" in enrollment.provisioning_uri
        assert len(enrollment.backup_codes) == 10
        assert len(set(enrollment.backup_codes)) == 10
        assert all(len(c) == 8 and c == c.upper() for c in enrollment.backup_codes)

        stored = user_store.get_by_id(account.id)
        assert stored.two_factor_secret == enrollment.secret
        assert stored.two_factor_enabled is False
        assert verifier.status(stored).pending is True

    def test_restarting_enrollment_overwrites_pending_secret(self, verifier, account, user_store) -> None:
        first = verifier.begin_enrollment(account)
        second = verifier.begin_enrollment(account)
        assert first.secret != second.secret
        assert user_store.get_by_id(account.id).two_factor_secret == second.secret
        assert user_store.count_backup_codes(account.id) == 10

    def test_confirm_with_valid_code_enables(self, verifier, account, user_store) -> None:
        enrollment = verifier.begin_enrollment(account)
        assert verifier.confirm_enrollment(account, _code(enrollment.secret, verifier.clock))
        stored = user_store.get_by_id(account.id)
        assert stored.two_factor_enabled
        status = verifier.status(stored)
        assert status.enabled and not status.pending
        assert status.backup_codes_remaining == 10

    def test_confirm_with_wrong_code_keeps_pending(self, verifier, account, user_store, clock) -> None:
        enrollment = verifier.begin_enrollment(account)
        stale = _code(enrollment.secret, clock, minutes=-10)
        assert verifier.confirm_enrollment(account, stale) is False
        stored = user_store.get_by_id(account.id)
        assert not stored.two_factor_enabled
        assert verifier.status(stored).pending

    def test_confirm_without_pending_secret(self, verifier, account) -> None:
        with pytest.raises(InvalidTransition):
            verifier.confirm_enrollment(account, "123456")

    def test_enable_twice_is_rejected(self, verifier, account, clock) -> None:
        _enable(verifier, account, clock)
        with pytest.raises(InvalidTransition):
            verifier.begin_enrollment(account)
        with pytest.raises(InvalidTransition):
            verifier.confirm_enrollment(account, "123456")

    def test_disable_clears_secret_and_codes(self, verifier, account, clock, user_store) -> None:
        _enable(verifier, account, clock)
        verifier.disable(account)
        stored = user_store.get_by_id(account.id)
        assert not stored.two_factor_enabled
        assert stored.two_factor_secret is None
        assert user_store.count_backup_codes(account.id) == 0


class TestVerification:
    def test_code_within_window(self, verifier, account, clock) -> None:
        _enable(verifier, account, clock)
        assert verifier.verify_code(account.two_factor_secret, _code(account.two_factor_secret, clock, seconds=-30))
        assert verifier.verify_code(account.two_factor_secret, _code(account.two_factor_secret, clock, seconds=30))

    def test_code_outside_window(self, verifier, account, clock) -> None:
        _enable(verifier, account, clock)
        assert not verifier.verify_code(account.two_factor_secret, _code(account.two_factor_secret, clock, minutes=10))

    def test_non_numeric_code_rejected(self, verifier, account, clock) -> None:
        _enable(verifier, account, clock)
        assert not verifier.verify_code(account.two_factor_secret, "abcdef")

    def test_spaces_in_code_are_ignored(self, verifier, account, clock) -> None:
        _enable(verifier, account, clock)
        code = _code(account.two_factor_secret, clock)
        assert verifier.verify_code(account.two_factor_secret, f"{code[:3]} {code[3:]}")

    def test_login_accepts_totp(self, verifier, account, clock) -> None:
        _enable(verifier, account, clock)
        result = verifier.verify_at_login(account, _code(account.two_factor_secret, clock))
        assert result.accepted and not result.via_backup_code

    def test_login_fails_closed_when_not_enabled(self, verifier, account) -> None:
        assert verifier.verify_at_login(account, "123456").accepted is False


class TestBackupCodes:
    def test_backup_code_is_single_use(self, verifier, account, clock, user_store) -> None:
        codes = _enable(verifier, account, clock)
        first = verifier.verify_at_login(account, codes[0])
        assert first.accepted and first.via_backup_code
        assert user_store.count_backup_codes(account.id) == 9
        assert verifier.verify_at_login(account, codes[0]).accepted is False

    def test_backup_code_formatting_tolerated(self, verifier, account, clock) -> None:
        codes = _enable(verifier, account, clock)
        sloppy = f"{codes[1][:4].lower()}-{codes[1][4:].lower()}"
        assert verifier.verify_at_login(account, sloppy).accepted

    def test_codes_are_stored_as_digests(self, verifier, account, clock, user_store) -> None:
        codes = _enable(verifier, account, clock)
        with user_store.engine.connect() as conn:
            stored = {row[0] for row in conn.exec_driver_sql("SELECT code_hash FROM backup_codes")}
        assert not stored & set(codes)

    def test_regenerate_replaces_set(self, verifier, account, clock) -> None:
        old = _enable(verifier, account, clock)
        new = verifier.regenerate_backup_codes(account)
        assert len(new) == 10
        assert verifier.verify_at_login(account, old[0]).accepted is False
        assert verifier.verify_at_login(account, new[0]).accepted

    def test_regenerate_requires_enabled(self, verifier, account) -> None:
        with pytest.raises(InvalidTransition):
            verifier.regenerate_backup_codes(account)



def test_racing_backup_code_is_accepted_once(file_db_url, clock) -> None:
    store = UserStore(file_db_url, clock=clock)
    try:
        verifier = TwoFactorVerifier(store, token_key=KEY, issuer="VaultPass", valid_window=2, clock=clock)
        user = User(email="race@example.com", hashed_password="unused")
        user.id = store.create_user(user)
        user = store.get_by_id(user.id)
        code = _enable(verifier, user, clock)[0]
        enabled = store.get_by_id(user.id)

        results = run_concurrently(lambda: verifier.verify_at_login(enabled, code), workers=8)

        assert not [r for r in results if isinstance(r, Exception)]
        assert [r.accepted for r in results].count(True) == 1
        assert store.count_backup_codes(user.id) == 9
    finally:
        store.close()
