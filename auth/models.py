"""
auth/models.py -- Domain dataclasses for accounts, credentials, and tokens.

Pattern: Data class (pure data container, close to zero logic). Stores and
services do the work; these only carry shape.

Lockout state is ONE field: locked_until. "Locked" is derived from it by
comparing against the clock (see CredentialStore.is_locked); there is no
separate boolean that could drift out of sync.

Layer rule: imports only core/ and sessions/ (for DeviceInfo).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from sessions.models import DeviceInfo

ROLES = ("user", "admin", "moderator")


@dataclass
class User:
    """An account.

    email is stored lower-cased and is unique; username is optional and unique
    when present. The verification and reset token fields hold HMAC digests,
    never the raw tokens that were mailed out. two_factor_secret is set while
    enrollment is pending and stays set while 2FA is enabled; backup codes
    live in their own table (see auth/store.py).
    """

    email: str
    hashed_password: str | None
    role: str = "user"  # "user" | "admin" | "moderator"
    id: int | None = None
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    is_email_verified: bool = False
    email_verification_token: str | None = None
    email_verification_expires: datetime | None = None
    password_reset_token: str | None = None
    password_reset_expires: datetime | None = None
    failed_attempts: int = 0
    locked_until: datetime | None = None
    two_factor_enabled: bool = False
    two_factor_secret: str | None = None
    last_login: datetime | None = None
    last_login_ip: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def display_name(self) -> str | None:
        return self.first_name or self.username


@dataclass
class PasswordStrength:
    """Deterministic strength breakdown for a candidate password.

    band is one of "weak", "fair", "good", "strong", "very-strong".
    requirements maps each check name to whether it passed.
    """

    score: int
    band: str
    requirements: dict[str, bool]
    feedback: list[str] = field(default_factory=list)

    @property
    def is_weak(self) -> bool:
        return self.band == "weak"

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "strength": self.band,
            "requirements": dict(self.requirements),
            "feedback": list(self.feedback),
        }


@dataclass
class LockoutState:
    """Result of recording a failed login."""

    failed_attempts: int
    locked_until: datetime | None
    newly_locked: bool = False


@dataclass
class TwoFactorEnrollment:
    """Returned once by begin_enrollment; the raw backup codes are never shown again."""

    secret: str
    provisioning_uri: str
    backup_codes: list[str]


@dataclass
class TwoFactorResult:
    accepted: bool
    via_backup_code: bool = False


@dataclass
class TwoFactorStatus:
    enabled: bool
    pending: bool
    backup_codes_remaining: int


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds
    token_type: str = "Bearer"


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, resolved once per request from an access token.

    Passed explicitly into every service call that acts on behalf of a user.
    """

    user_id: int
    email: str
    role: str


@dataclass
class LoginResult:
    user: User
    tokens: TokenPair
    session_id: int
    device: DeviceInfo
    risk_score: int = 0
    suspicious: bool = False
