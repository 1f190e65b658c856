"""
auth/credentials.py -- Credential Store: password checks, lockout, password policy.

CredentialStore is the only code that writes password hashes or lockout
counters. It wraps auth.store.UserStore with the policy knobs from Settings:

  bcrypt_rounds     cost factor for new hashes (default 12)
  max_attempts      failed logins before lockout (default 5)
  lockout_seconds   lock duration (default 30 minutes)

Lockout lifecycle (one authoritative field, locked_until):

  unlocked --failure x max_attempts--> locked --time passes--> expired
  expired  --next failure--> counter restarts at 1, lock cleared
  any      --successful login / password reset--> counter 0, lock cleared

Both transitions are single UPDATE statements in the store, so concurrent
failed attempts cannot lose increments.
"""

from __future__ import annotations

import logging

from auth.models import LockoutState, PasswordStrength, User
from auth.passwords import DEFAULT_ROUNDS, burn_password_check, check_password_strength, hash_password, verify_password
from auth.store import UserStore
from core.clock import Clock, utcnow
from core.errors import SamePassword, WeakPassword

logger = logging.getLogger("vaultpass.auth")


class CredentialStore:
    def __init__(
        self,
        users: UserStore,
        bcrypt_rounds: int = DEFAULT_ROUNDS,
        max_attempts: int = 5,
        lockout_seconds: int = 30 * 60,
        clock: Clock = utcnow,
    ) -> None:
        self.users = users
        self.bcrypt_rounds = bcrypt_rounds
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self.clock = clock

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_password(self, user: User | None, candidate: str) -> bool:
        """Check candidate against the user's hash.

        user=None (unknown account) still costs one bcrypt check and returns
        False. Raises SystemFailure if an existing user has no hash.
        """
        if user is None:
            burn_password_check(candidate, self.bcrypt_rounds)
            return False
        return verify_password(candidate, user.hashed_password)

    def is_locked(self, user: User) -> bool:
        return user.locked_until is not None and user.locked_until > self.clock()

    # ------------------------------------------------------------------
    # Lockout counters
    # ------------------------------------------------------------------

    def record_failure(self, user: User) -> LockoutState:
        state = self.users.record_failed_login(user.id, self.max_attempts, self.lockout_seconds)
        if state is None:
            # The row vanished between lookup and update; report the in-memory view.
            return LockoutState(failed_attempts=user.failed_attempts, locked_until=user.locked_until)
        user.failed_attempts = state.failed_attempts
        user.locked_until = state.locked_until
        if state.newly_locked:
            logger.warning(
                "Account %s locked after %d failed attempts (until %s)",
                user.id,
                state.failed_attempts,
                state.locked_until.isoformat() if state.locked_until else "?",
            )
        return state

    def reset_failures(self, user: User) -> None:
        self.users.reset_failed_logins(user.id)
        user.failed_attempts = 0
        user.locked_until = None

    # ------------------------------------------------------------------
    # Password policy
    # ------------------------------------------------------------------

    def hash_password(self, plain: str) -> str:
        return hash_password(plain, self.bcrypt_rounds)

    def check_password_strength(self, candidate: str) -> PasswordStrength:
        return check_password_strength(candidate)

    def enforce_strength(self, candidate: str) -> PasswordStrength:
        """Raise WeakPassword (with the breakdown) when candidate scores in the weak band."""
        strength = check_password_strength(candidate)
        if strength.is_weak:
            raise WeakPassword(strength.to_dict())
        return strength

    def set_password(self, user: User, new_plain: str, **extra_fields) -> None:
        """Replace the stored hash with a fresh salted hash of new_plain.

        Raises SamePassword if new_plain matches the current hash. extra_fields
        are written in the same UPDATE (e.g. clearing a reset token).
        """
        if user.hashed_password and verify_password(new_plain, user.hashed_password):
            raise SamePassword()
        new_hash = self.hash_password(new_plain)
        self.users.update_user(user.id, hashed_password=new_hash, **extra_fields)
        user.hashed_password = new_hash
