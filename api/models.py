"""
API request and response models for VaultPass REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are separate from the dataclasses in auth/, sessions/ and
audit/, which own the internal domain representation. Route handlers map
between the two (see the from_* classmethods).

Separation of concerns: domain dataclasses = domain truth; api/ models = API contract.
Shape validation lives here; password POLICY (strength, same-password) lives
in the core and is reported through the error envelope.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from audit.models import EventPage, SecurityEvent, SecuritySummary
from auth.models import PasswordStrength, TokenPair, TwoFactorEnrollment, TwoFactorStatus, User
from sessions.models import Device, Session

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Shape check only; the verification email proves deliverability.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
USERNAME_PATTERN = r"^[A-Za-z0-9_]{3,30}$"
TOTP_PATTERN = r"^[0-9A-Fa-f \-]{6,12}$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _Request(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")


class RegisterRequest(_Request):
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=1, max_length=128)
    username: Optional[str] = Field(default=None, pattern=USERNAME_PATTERN)
    first_name: Optional[str] = Field(default=None, max_length=50)
    last_name: Optional[str] = Field(default=None, max_length=50)

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class LoginRequest(_Request):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=128)
    two_factor_code: Optional[str] = Field(default=None, pattern=TOTP_PATTERN)


class RefreshRequest(_Request):
    refresh_token: str = Field(min_length=1, max_length=4096)


class LogoutRequest(_Request):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class TokenRequest(_Request):
    """Email-verification or password-reset token from the emailed link."""

    token: str = Field(min_length=1, max_length=128)


class EmailRequest(_Request):
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)


class ResetPasswordRequest(_Request):
    token: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=1, max_length=128)


class ChangePasswordRequest(_Request):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=1, max_length=128)


class PasswordCheckRequest(_Request):
    password: str = Field(max_length=128)


class PasswordConfirmRequest(_Request):
    password: str = Field(min_length=1, max_length=128)


class TwoFactorCodeRequest(_Request):
    code: str = Field(pattern=TOTP_PATTERN)


class TwoFactorDisableRequest(_Request):
    password: str = Field(min_length=1, max_length=128)
    code: str = Field(pattern=TOTP_PATTERN)


class ProfileUpdateRequest(_Request):
    username: Optional[str] = Field(default=None, pattern=USERNAME_PATTERN)
    first_name: Optional[str] = Field(default=None, max_length=50)
    last_name: Optional[str] = Field(default=None, max_length=50)


# ---------------------------------------------------------------------------
# Account responses
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    message: str


class UserResponse(BaseModel):
    id: int
    email: str
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str
    is_email_verified: bool
    two_factor_enabled: bool
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> UserResponse:
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role,
            is_email_verified=user.is_email_verified,
            two_factor_enabled=user.two_factor_enabled,
            last_login=user.last_login,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
    expires_in: int

    @classmethod
    def from_pair(cls, pair: TokenPair) -> TokenPairResponse:
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
        )


class LoginResponse(BaseModel):
    user: UserResponse
    tokens: TokenPairResponse


class RegisterResponse(BaseModel):
    message: str = "Registration successful. Please check your email to verify your account."
    user: UserResponse


class PasswordStrengthResponse(BaseModel):
    score: int
    strength: str
    requirements: dict[str, bool]
    feedback: list[str]

    @classmethod
    def from_strength(cls, strength: PasswordStrength) -> PasswordStrengthResponse:
        return cls(**strength.to_dict())


class VerificationStatusResponse(BaseModel):
    email: str
    is_email_verified: bool


class TwoFactorSetupResponse(BaseModel):
    """Returned once. The backup codes are not retrievable afterwards."""

    secret: str
    provisioning_uri: str
    backup_codes: list[str]

    @classmethod
    def from_enrollment(cls, enrollment: TwoFactorEnrollment) -> TwoFactorSetupResponse:
        return cls(
            secret=enrollment.secret,
            provisioning_uri=enrollment.provisioning_uri,
            backup_codes=list(enrollment.backup_codes),
        )


class BackupCodesResponse(BaseModel):
    backup_codes: list[str]


class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    pending: bool
    backup_codes_remaining: int

    @classmethod
    def from_status(cls, status: TwoFactorStatus) -> TwoFactorStatusResponse:
        return cls(enabled=status.enabled, pending=status.pending, backup_codes_remaining=status.backup_codes_remaining)


# ---------------------------------------------------------------------------
# Sessions and devices
# ---------------------------------------------------------------------------


class SessionResponse(BaseModel):
    id: int
    device_id: str
    device_type: str
    browser: str
    os: str
    ip_address: str
    user_agent: str
    last_activity: Optional[datetime] = None
    created_at: Optional[datetime] = None
    expires_at: datetime

    @classmethod
    def from_session(cls, session: Session) -> SessionResponse:
        d = session.device
        return cls(
            id=session.id,
            device_id=d.device_id,
            device_type=d.device_type,
            browser=d.browser,
            os=d.os,
            ip_address=d.ip_address,
            user_agent=d.user_agent,
            last_activity=session.last_activity,
            created_at=session.created_at,
            expires_at=session.expires_at,
        )


class DeviceResponse(BaseModel):
    device_id: str
    device_name: str
    device_type: str
    browser: str
    os: str
    ip_address: str
    is_trusted: bool
    is_current: bool = False
    last_used: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_device(cls, device: Device, current_device_id: str | None = None) -> DeviceResponse:
        return cls(
            device_id=device.device_id,
            device_name=device.device_name,
            device_type=device.device_type,
            browser=device.browser,
            os=device.os,
            ip_address=device.ip_address,
            is_trusted=device.is_trusted,
            is_current=device.device_id == current_device_id,
            last_used=device.last_used,
            created_at=device.created_at,
        )


class RevokedCountResponse(BaseModel):
    message: str
    sessions_revoked: int = 0
    devices_revoked: int = 0


# ---------------------------------------------------------------------------
# Security activity
# ---------------------------------------------------------------------------


class SecurityEventResponse(BaseModel):
    id: Optional[int] = None
    action: str
    status: str
    ip_address: str
    user_agent: str
    details: Optional[str] = None
    location: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_event(cls, ev: SecurityEvent) -> SecurityEventResponse:
        return cls(
            id=ev.id,
            action=ev.action.value,
            status=ev.status.value,
            ip_address=ev.ip_address,
            user_agent=ev.user_agent,
            details=ev.details,
            location=ev.location.to_dict() if ev.location else None,
            created_at=ev.created_at,
        )


class ActivityResponse(BaseModel):
    items: list[SecurityEventResponse]
    total: int
    page: int
    limit: int
    pages: int

    @classmethod
    def from_page(cls, page: EventPage) -> ActivityResponse:
        return cls(
            items=[SecurityEventResponse.from_event(e) for e in page.items],
            total=page.total,
            page=page.page,
            limit=page.limit,
            pages=page.pages,
        )


class SecuritySummaryResponse(BaseModel):
    total_events: int
    successful_logins: int
    failed_logins: int
    suspicious_last_30_days: int
    recent: list[SecurityEventResponse]

    @classmethod
    def from_summary(cls, summary: SecuritySummary) -> SecuritySummaryResponse:
        return cls(
            total_events=summary.total_events,
            successful_logins=summary.successful_logins,
            failed_logins=summary.failed_logins,
            suspicious_last_30_days=summary.suspicious_last_30_days,
            recent=[SecurityEventResponse.from_event(e) for e in summary.recent],
        )


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = {}
