"""
auth/two_factor.py -- TOTP second factor and single-use backup codes.

State machine per user (stored as two_factor_secret + two_factor_enabled):

  disabled  (no secret, not enabled)
     | begin_enrollment()          secret + 10 backup codes stored
     v
  pending   (secret, not enabled)  begin_enrollment() again overwrites both
     | confirm_enrollment(code)    valid TOTP code flips the flag
     v
  enabled   (secret, enabled)
     | disable()                   caller has re-verified password + code
     v
  disabled

Codes are checked with pyotp at +/- valid_window time steps (default 2, i.e.
+/- 60 seconds at the standard 30 second step). Backup codes are 8 uppercase
hex characters, stored only as HMAC digests, and consumed with a single
DELETE so a code can be accepted at most once even under concurrent logins.
"""

from __future__ import annotations

import logging
import secrets

import pyotp

from auth.models import TwoFactorEnrollment, TwoFactorResult, TwoFactorStatus, User
from auth.passwords import hash_token
from auth.store import UserStore
from core.clock import Clock, utcnow
from core.errors import InvalidTransition

logger = logging.getLogger("vaultpass.auth")

SECRET_LENGTH = 32


def _normalize(code: str) -> str:
    return code.replace(" ", "").replace("-", "").strip()


class TwoFactorVerifier:
    def __init__(
        self,
        users: UserStore,
        token_key: str,
        issuer: str = "VaultPass",
        valid_window: int = 2,
        backup_code_count: int = 10,
        clock: Clock = utcnow,
    ) -> None:
        self.users = users
        self.token_key = token_key
        self.issuer = issuer
        self.valid_window = valid_window
        self.backup_code_count = backup_code_count
        self.clock = clock

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    def begin_enrollment(self, user: User) -> TwoFactorEnrollment:
        """Generate a pending secret and a fresh backup-code set.

        Raises InvalidTransition if 2FA is already enabled.
        """
        if user.two_factor_enabled:
            raise InvalidTransition("Two-factor authentication is already enabled.")
        secret = pyotp.random_base32(SECRET_LENGTH)
        codes = self._new_codes()
        if not self.users.begin_two_factor(user.id, secret, [self._digest(c) for c in codes]):
            # Enabled concurrently by another request.
            raise InvalidTransition("Two-factor authentication is already enabled.")
        user.two_factor_secret = secret
        uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=self.issuer)
        return TwoFactorEnrollment(secret=secret, provisioning_uri=uri, backup_codes=codes)

    def confirm_enrollment(self, user: User, code: str) -> bool:
        """Enable 2FA if code is valid for the pending secret. False on a wrong code."""
        if user.two_factor_enabled:
            raise InvalidTransition("Two-factor authentication is already enabled.")
        if not user.two_factor_secret:
            raise InvalidTransition("2FA setup not initiated. Please set up 2FA first.")
        if not self.verify_code(user.two_factor_secret, code):
            return False
        if not self.users.enable_two_factor(user.id):
            raise InvalidTransition("Two-factor authentication is already enabled.")
        user.two_factor_enabled = True
        logger.info("2FA enabled for user %s", user.id)
        return True

    def disable(self, user: User) -> None:
        """Clear the secret and every backup code. The caller re-verifies password and code first."""
        self.users.clear_two_factor(user.id)
        user.two_factor_enabled = False
        user.two_factor_secret = None
        logger.info("2FA disabled for user %s", user.id)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_code(self, secret: str, code: str) -> bool:
        """Time-based check only (no backup codes)."""
        code = _normalize(code or "")
        if not code.isdigit():
            return False
        return pyotp.TOTP(secret).verify(code, for_time=self.clock(), valid_window=self.valid_window)

    def verify_at_login(self, user: User, code: str) -> TwoFactorResult:
        """TOTP first, then the backup-code set. Fails closed."""
        if not user.two_factor_enabled or not user.two_factor_secret or not code:
            return TwoFactorResult(accepted=False)
        if self.verify_code(user.two_factor_secret, code):
            return TwoFactorResult(accepted=True)
        if self.users.consume_backup_code(user.id, self._digest(code)):
            remaining = self.users.count_backup_codes(user.id)
            logger.info("User %s signed in with a backup code (%d left)", user.id, remaining)
            return TwoFactorResult(accepted=True, via_backup_code=True)
        return TwoFactorResult(accepted=False)

    # ------------------------------------------------------------------
    # Backup codes
    # ------------------------------------------------------------------

    def regenerate_backup_codes(self, user: User) -> list[str]:
        """Replace the whole set. The caller re-verifies the password first."""
        if not user.two_factor_enabled:
            raise InvalidTransition("Two-factor authentication is not enabled.")
        codes = self._new_codes()
        self.users.replace_backup_codes(user.id, [self._digest(c) for c in codes])
        return codes

    def status(self, user: User) -> TwoFactorStatus:
        return TwoFactorStatus(
            enabled=user.two_factor_enabled,
            pending=bool(user.two_factor_secret) and not user.two_factor_enabled,
            backup_codes_remaining=self.users.count_backup_codes(user.id),
        )

    def _new_codes(self) -> list[str]:
        codes: list[str] = []
        while len(codes) < self.backup_code_count:
            code = secrets.token_hex(4).upper()
            if code not in codes:
                codes.append(code)
        return codes

    def _digest(self, code: str) -> str:
        return hash_token(_normalize(code).upper(), self.token_key)
