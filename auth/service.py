"""
auth/service.py -- Orchestration layer for every account-security operation.

AuthService composes the six components; none of them knows about the
others. Canonical login:

  CredentialStore   verify password, check lockout
  TwoFactorVerifier TOTP or backup code, if enabled
  RiskEngine        score against the event history (before anything is recorded)
  TokenService      issue access + refresh pair
  SessionRegistry   upsert device, create session bound to the refresh token
  SecurityEventLog  append outcome
  Notifier          alert the user if the login scored suspicious

Side effects that talk to the outside world (email) go through the
TaskDispatcher and can never fail the operation. Event-log writes never
raise (see audit/store.py).

The authenticated caller is always an explicit Principal argument. The
service never reads or mutates a request object; the HTTP adapter resolves
the Principal once (authenticate()) and hands it in.

Enumeration: forgot_password() and resend_verification() behave identically
whether or not the address belongs to an account.

Layer rule: may import core/, audit/, sessions/, risk/ and auth/. Never api/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from audit.models import EventFilter, EventPage, EventStatus, SecurityAction, SecurityEvent, SecuritySummary
from auth.credentials import CredentialStore
from auth.models import (
    ROLES,
    LoginResult,
    PasswordStrength,
    Principal,
    TokenPair,
    TwoFactorEnrollment,
    TwoFactorStatus,
    User,
)
from auth.passwords import hash_token
from auth.tokens import TokenService
from auth.two_factor import TwoFactorVerifier
from core.clock import Clock, utcnow
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
    TokenMalformed,
    TwoFactorRequired,
)
from core.geolocation import Location
from sessions.models import Device, DeviceInfo, Session

logger = logging.getLogger("vaultpass.auth")

MAX_PAGE_SIZE = 100
ADMIN_ROLES = ("admin", "moderator")


class AuthService:
    def __init__(
        self,
        *,
        users,
        credentials: CredentialStore,
        two_factor: TwoFactorVerifier,
        tokens: TokenService,
        sessions,
        events,
        risk,
        notifier,
        dispatcher,
        token_key: str,
        session_ttl: int = 7 * 24 * 60 * 60,
        verification_ttl: timedelta = timedelta(hours=24),
        reset_ttl: timedelta = timedelta(minutes=60),
        clock: Clock = utcnow,
    ) -> None:
        self.users = users
        self.credentials = credentials
        self.two_factor = two_factor
        self.tokens = tokens
        self.sessions = sessions
        self.events = events
        self.risk = risk
        self.notifier = notifier
        self.dispatcher = dispatcher
        self.token_key = token_key
        self.session_ttl = session_ttl
        self.verification_ttl = verification_ttl
        self.reset_ttl = reset_ttl
        self.clock = clock

    @classmethod
    def from_settings(
        cls, settings, *, users, sessions, events, risk, notifier, dispatcher, clock: Clock = utcnow
    ) -> AuthService:
        """Build the service and its credential/2FA/token components from Settings."""
        return cls(
            users=users,
            credentials=CredentialStore(
                users,
                bcrypt_rounds=settings.bcrypt_rounds,
                max_attempts=settings.max_login_attempts,
                lockout_seconds=settings.lockout_minutes * 60,
                clock=clock,
            ),
            two_factor=TwoFactorVerifier(
                users,
                token_key=settings.secret_key,
                issuer=settings.totp_issuer,
                valid_window=settings.totp_valid_window,
                backup_code_count=settings.backup_code_count,
                clock=clock,
            ),
            tokens=TokenService.from_settings(settings, clock=clock),
            sessions=sessions,
            events=events,
            risk=risk,
            notifier=notifier,
            dispatcher=dispatcher,
            token_key=settings.secret_key,
            session_ttl=settings.session_ttl_seconds,
            verification_ttl=timedelta(hours=settings.email_verification_ttl_hours),
            reset_ttl=timedelta(minutes=settings.password_reset_ttl_minutes),
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Registration and email verification
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        device: DeviceInfo,
        username: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> User:
        """Create an unverified account and mail a 24-hour verification token."""
        email = email.strip().lower()
        if self.users.get_by_email(email) is not None:
            raise DuplicateIdentity("email")
        if username and self.users.get_by_username(username) is not None:
            raise DuplicateIdentity("username")
        self.credentials.enforce_strength(password)

        raw_token = secrets.token_hex(32)
        user = User(
            email=email,
            hashed_password=self.credentials.hash_password(password),
            username=username or None,
            first_name=first_name,
            last_name=last_name,
            email_verification_token=hash_token(raw_token, self.token_key),
            email_verification_expires=self.clock() + self.verification_ttl,
        )
        try:
            user.id = self.users.create_user(user)
        except IntegrityError:
            # Lost a race with a concurrent registration.
            field = "email" if self.users.get_by_email(email) is not None else "username"
            raise DuplicateIdentity(field) from None

        self._send("verification-email", self.notifier.send_verification, email, raw_token, first_name)
        self._record(SecurityAction.REGISTER, EventStatus.SUCCESS, device, user, details="User registered successfully")
        logger.info("Registered user %s", user.id)
        return user

    def verify_email(self, token: str, device: DeviceInfo) -> User:
        user = self.users.get_by_verification_token_hash(hash_token(token, self.token_key))
        if user is None or not _still_valid(user.email_verification_expires, self.clock):
            raise ActionTokenInvalid("Invalid or expired verification token.")
        self.users.update_user(
            user.id, is_email_verified=True, email_verification_token=None, email_verification_expires=None
        )
        user.is_email_verified = True
        user.email_verification_token = None
        user.email_verification_expires = None
        self._record(
            SecurityAction.EMAIL_VERIFICATION, EventStatus.SUCCESS, device, user, details="Email verified successfully"
        )
        return user

    def resend_verification(self, email: str, device: DeviceInfo) -> None:
        """Issue a fresh verification token. Silent for unknown or already verified addresses."""
        user = self.users.get_by_email(email)
        if user is None or user.is_email_verified:
            logger.debug("Verification resend skipped (unknown or already verified address)")
            return
        raw_token = secrets.token_hex(32)
        self.users.update_user(
            user.id,
            email_verification_token=hash_token(raw_token, self.token_key),
            email_verification_expires=self.clock() + self.verification_ttl,
        )
        self._send("verification-email", self.notifier.send_verification, user.email, raw_token, user.first_name)
        self._record(
            SecurityAction.EMAIL_VERIFICATION, EventStatus.SUCCESS, device, user, details="Verification email resent"
        )

    def verification_status(self, principal: Principal) -> bool:
        return self._user(principal).is_email_verified

    # ------------------------------------------------------------------
    # Login, refresh, logout
    # ------------------------------------------------------------------

    def login(
        self,
        email: str,
        password: str,
        device: DeviceInfo,
        two_factor_code: str | None = None,
    ) -> LoginResult:
        user = self.users.get_by_email(email)
        if user is None:
            self.credentials.verify_password(None, password)
            self._record(SecurityAction.LOGIN, EventStatus.FAILURE, device, email=email, details="User not found")
            raise InvalidCredential()

        if self.credentials.is_locked(user):
            self._record(
                SecurityAction.LOGIN,
                EventStatus.FAILURE,
                device,
                user,
                details="Account locked due to too many failed attempts",
            )
            raise AccountLocked(user.locked_until)

        if not self.credentials.verify_password(user, password):
            state = self.credentials.record_failure(user)
            self._record(SecurityAction.LOGIN, EventStatus.FAILURE, device, user, details="Invalid password")
            if state.newly_locked:
                self._record(
                    SecurityAction.ACCOUNT_LOCKED,
                    EventStatus.WARNING,
                    device,
                    user,
                    details=f"Account locked after {state.failed_attempts} failed attempts",
                )
            raise InvalidCredential()

        if user.two_factor_enabled:
            if not two_factor_code:
                raise TwoFactorRequired()
            check = self.two_factor.verify_at_login(user, two_factor_code)
            if not check.accepted:
                self._record(SecurityAction.LOGIN, EventStatus.FAILURE, device, user, details="Invalid 2FA token")
                raise InvalidTwoFactorCode()
            self._record(
                SecurityAction.TWO_FACTOR_VERIFIED,
                EventStatus.SUCCESS,
                device,
                user,
                details="Backup code used" if check.via_backup_code else "Authenticator code accepted",
            )

        # Score before the success is recorded and before the lock fields are cleared.
        assessment = self.risk.score_login(user.id, user.email, device, locked_until=user.locked_until)

        self.credentials.reset_failures(user)
        self.users.stamp_login(user.id, device.ip_address)
        pair = self.tokens.issue_pair(user)
        self.sessions.upsert_device(user.id, device)
        session = self.sessions.create_session(user.id, pair.refresh_token, device, self.session_ttl)

        self._record(
            SecurityAction.LOGIN,
            EventStatus.SUCCESS,
            device,
            user,
            details="User logged in successfully",
            location=assessment.location,
        )
        self._record(
            SecurityAction.SESSION_CREATED,
            EventStatus.SUCCESS,
            device,
            user,
            details=f"Session created on {device.display_name}",
            location=assessment.location,
        )
        if assessment.suspicious:
            self._alert(
                user,
                "Suspicious Login Detected",
                "We detected a login with the following suspicious characteristics: "
                f"{', '.join(assessment.reasons)}. If this was you, you can ignore this message. "
                "If not, please secure your account immediately.",
                device,
            )

        return LoginResult(
            user=user,
            tokens=pair,
            session_id=session.id,
            device=device,
            risk_score=assessment.score,
            suspicious=assessment.suspicious,
        )

    def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair and rotate the session to the new token."""
        claims = self.tokens.verify_refresh(refresh_token)
        session = self.sessions.find_active_by_refresh_token(refresh_token)
        if session is None or session.user_id != claims["user_id"]:
            raise SessionRevoked()
        user = self.users.get_by_id(session.user_id)
        if user is None:
            raise TokenMalformed("User not found. Token invalid.")
        if self.credentials.is_locked(user):
            raise AccountLocked(user.locked_until)

        pair = self.tokens.issue_pair(user)
        if not self.sessions.rotate_session(session.id, refresh_token, pair.refresh_token):
            # A concurrent refresh rotated it first.
            raise SessionRevoked()
        return pair

    def logout(
        self,
        device: DeviceInfo,
        refresh_token: str | None = None,
        principal: Principal | None = None,
    ) -> int:
        """End one session (by refresh token) or, with no token, every session of the principal.

        Returns the number of sessions deactivated.
        """
        if refresh_token:
            session = self.sessions.find_by_refresh_token(refresh_token)
            if session is None or (principal is not None and session.user_id != principal.user_id):
                revoked, user_id = 0, principal.user_id if principal else None
            else:
                revoked = 1 if self.sessions.revoke(session.id, session.user_id) else 0
                user_id = session.user_id
        elif principal is not None:
            revoked = self.sessions.revoke_all(principal.user_id)
            user_id = principal.user_id
        else:
            raise TokenMalformed("Refresh token or authentication required.")

        user = self.users.get_by_id(user_id) if user_id is not None else None
        if user is not None:
            self._record(SecurityAction.LOGOUT, EventStatus.SUCCESS, device, user, details="User logged out")
        return revoked

    def authenticate(self, access_token: str) -> Principal:
        """Resolve an access token to the caller. The account must still exist and be unlocked."""
        principal = self.tokens.principal(access_token)
        user = self.users.get_by_id(principal.user_id)
        if user is None:
            raise TokenMalformed("User not found. Token invalid.")
        if self.credentials.is_locked(user):
            raise AccountLocked(user.locked_until)
        return Principal(user_id=user.id, email=user.email, role=user.role)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def check_password_strength(self, candidate: str) -> PasswordStrength:
        return self.credentials.check_password_strength(candidate)

    def forgot_password(self, email: str, device: DeviceInfo) -> None:
        """Mail a one-hour reset token. Returns the same way whether or not the account exists."""
        user = self.users.get_by_email(email)
        if user is None:
            logger.debug("Password reset requested for an unknown address")
            return
        raw_token = secrets.token_hex(32)
        self.users.update_user(
            user.id,
            password_reset_token=hash_token(raw_token, self.token_key),
            password_reset_expires=self.clock() + self.reset_ttl,
        )
        self._send("password-reset-email", self.notifier.send_password_reset, user.email, raw_token, user.first_name)
        self._record(
            SecurityAction.PASSWORD_RESET, EventStatus.SUCCESS, device, user, details="Password reset requested"
        )

    def reset_password(self, token: str, new_password: str, device: DeviceInfo) -> None:
        user = self.users.get_by_reset_token_hash(hash_token(token, self.token_key))
        if user is None or not _still_valid(user.password_reset_expires, self.clock):
            raise ActionTokenInvalid("Invalid or expired reset token.")
        self.credentials.enforce_strength(new_password)
        self.credentials.set_password(user, new_password, password_reset_token=None, password_reset_expires=None)
        self.credentials.reset_failures(user)

        self._send("password-changed-email", self.notifier.send_password_changed, user.email, user.first_name)
        self._alert(
            user,
            "Password Reset",
            "Your password was successfully reset. If you did not make this change, "
            "please contact support immediately.",
            device,
        )
        self._record(
            SecurityAction.PASSWORD_RESET, EventStatus.SUCCESS, device, user, details="Password reset successfully"
        )

    def change_password(self, principal: Principal, current: str, new_password: str, device: DeviceInfo) -> None:
        user = self._user(principal)
        if not self.credentials.verify_password(user, current):
            self._record(
                SecurityAction.PASSWORD_CHANGE, EventStatus.FAILURE, device, user, details="Invalid current password"
            )
            raise InvalidCredential("Current password is incorrect.")
        self.credentials.enforce_strength(new_password)
        self.credentials.set_password(user, new_password)

        # Scored before this change is recorded, so only earlier changes count.
        assessment = self.risk.score_password_change(user.id, user.email, device)

        self._send("password-changed-email", self.notifier.send_password_changed, user.email, user.first_name)
        body = (
            "Your password was successfully changed. If you did not make this change, "
            "please contact support immediately."
        )
        if assessment.suspicious:
            body += f" This change was flagged as unusual: {', '.join(assessment.reasons)}."
        self._alert(user, "Password Changed", body, device)
        self._record(
            SecurityAction.PASSWORD_CHANGE,
            EventStatus.SUCCESS,
            device,
            user,
            details="Password changed successfully",
        )

    # ------------------------------------------------------------------
    # Two-factor authentication
    # ------------------------------------------------------------------

    def begin_two_factor(self, principal: Principal) -> TwoFactorEnrollment:
        return self.two_factor.begin_enrollment(self._user(principal))

    def confirm_two_factor(self, principal: Principal, code: str, device: DeviceInfo) -> None:
        user = self._user(principal)
        if not self.two_factor.confirm_enrollment(user, code):
            raise InvalidTwoFactorCode("Invalid verification code.")
        self._alert(user, "2FA Enabled", "Two-factor authentication has been enabled on your account.", device)
        self._record(
            SecurityAction.TWO_FACTOR_ENABLED,
            EventStatus.SUCCESS,
            device,
            user,
            details="Two-factor authentication enabled",
        )

    def disable_two_factor(self, principal: Principal, password: str, code: str, device: DeviceInfo) -> None:
        """Requires the current password AND a valid authenticator code."""
        user = self._user(principal)
        if not user.two_factor_enabled:
            raise InvalidTransition("Two-factor authentication is not enabled.")
        if not self.credentials.verify_password(user, password):
            self._record(
                SecurityAction.TWO_FACTOR_DISABLED, EventStatus.FAILURE, device, user, details="Invalid password"
            )
            raise InvalidCredential("Invalid password.")
        if not self.two_factor.verify_code(user.two_factor_secret, code):
            self._record(
                SecurityAction.TWO_FACTOR_DISABLED, EventStatus.FAILURE, device, user, details="Invalid 2FA token"
            )
            raise InvalidTwoFactorCode()
        self.two_factor.disable(user)
        self._alert(
            user,
            "2FA Disabled",
            "Two-factor authentication has been disabled on your account. "
            "If you did not make this change, please secure your account immediately.",
            device,
        )
        self._record(
            SecurityAction.TWO_FACTOR_DISABLED,
            EventStatus.SUCCESS,
            device,
            user,
            details="Two-factor authentication disabled",
        )

    def regenerate_backup_codes(self, principal: Principal, password: str, device: DeviceInfo) -> list[str]:
        user = self._user(principal)
        if not self.credentials.verify_password(user, password):
            raise InvalidCredential("Invalid password.")
        codes = self.two_factor.regenerate_backup_codes(user)
        self._record(
            SecurityAction.PROFILE_UPDATE, EventStatus.SUCCESS, device, user, details="Backup codes regenerated"
        )
        return codes

    def two_factor_status(self, principal: Principal) -> TwoFactorStatus:
        return self.two_factor.status(self._user(principal))

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def get_profile(self, principal: Principal) -> User:
        return self._user(principal)

    def update_profile(
        self,
        principal: Principal,
        device: DeviceInfo,
        username: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> User:
        """Update the given fields; None leaves a field unchanged."""
        user = self._user(principal)
        fields: dict = {}
        if username and username != user.username:
            if self.users.get_by_username(username) is not None:
                raise DuplicateIdentity("username")
            fields["username"] = username
        if first_name is not None:
            fields["first_name"] = first_name
        if last_name is not None:
            fields["last_name"] = last_name
        if fields:
            try:
                self.users.update_user(user.id, **fields)
            except IntegrityError:
                raise DuplicateIdentity("username") from None
            for key, value in fields.items():
                setattr(user, key, value)
        self._record(
            SecurityAction.PROFILE_UPDATE, EventStatus.SUCCESS, device, user, details="Profile updated successfully"
        )
        return user

    # ------------------------------------------------------------------
    # Sessions and devices
    # ------------------------------------------------------------------

    def list_sessions(self, principal: Principal) -> list[Session]:
        return self.sessions.list_active(principal.user_id)

    def revoke_session(self, principal: Principal, session_id: int, device: DeviceInfo) -> None:
        if not self.sessions.revoke(session_id, principal.user_id):
            raise NotFound("Session not found.")
        self._record_for(
            principal, SecurityAction.SESSION_REVOKED, device, details=f"Session {session_id} revoked"
        )

    def revoke_other_sessions(self, principal: Principal, keep_refresh_token: str | None, device: DeviceInfo) -> int:
        count = self.sessions.revoke_all_except(principal.user_id, keep_refresh_token)
        self._record_for(
            principal, SecurityAction.SESSION_REVOKED, device, details=f"Revoked {count} other session(s)"
        )
        return count

    def list_devices(self, principal: Principal) -> list[Device]:
        return self.sessions.list_devices(principal.user_id)

    def trust_device(self, principal: Principal, device_id: str, device: DeviceInfo) -> None:
        if not self.sessions.trust_device(principal.user_id, device_id):
            raise NotFound("Device not found.")
        self._record_for(principal, SecurityAction.PROFILE_UPDATE, device, details=f"Device {device_id} trusted")

    def revoke_device(self, principal: Principal, device_id: str, device: DeviceInfo) -> int:
        """Delete the device and deactivate its sessions. Returns the number of sessions ended."""
        ended = self.sessions.revoke_device(principal.user_id, device_id)
        if ended is None:
            raise NotFound("Device not found.")
        self._record_for(
            principal,
            SecurityAction.SESSION_REVOKED,
            device,
            details=f"Device {device_id} revoked ({ended} session(s) ended)",
        )
        return ended

    def revoke_other_devices(self, principal: Principal, device: DeviceInfo) -> tuple[int, int]:
        """Keep only the caller's current device. Returns (devices removed, sessions ended)."""
        removed, ended = self.sessions.revoke_all_devices_except(principal.user_id, device.device_id)
        self._record_for(
            principal,
            SecurityAction.SESSION_REVOKED,
            device,
            details=f"Revoked {removed} other device(s) ({ended} session(s) ended)",
        )
        return removed, ended

    def sweep_expired_sessions(self) -> int:
        return self.sessions.deactivate_expired()

    # ------------------------------------------------------------------
    # Security activity
    # ------------------------------------------------------------------

    def activity(self, principal: Principal, page: int = 1, limit: int = 20) -> EventPage:
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        return self.events.query(EventFilter(user_id=principal.user_id), page=max(page, 1), limit=limit)

    def security_summary(self, principal: Principal) -> SecuritySummary:
        return self.events.summarize(principal.user_id)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def list_users(self, principal: Principal) -> list[User]:
        require_role(principal, *ADMIN_ROLES)
        return self.users.list_users()

    def provision_user(self, email: str, password: str, role: str = "user", verified: bool = True) -> User:
        """Operator path (CLI): create an account without the email round trip."""
        if role not in ROLES:
            raise ValueError(f"role must be one of {ROLES!r}")
        if self.users.get_by_email(email) is not None:
            raise DuplicateIdentity("email")
        self.credentials.enforce_strength(password)
        user = User(
            email=email.strip().lower(),
            hashed_password=self.credentials.hash_password(password),
            role=role,
            is_email_verified=verified,
        )
        user.id = self.users.create_user(user)
        return user

    def unlock_account(self, email: str) -> User:
        """Operator path (CLI): clear the failure counter and lock together."""
        user = self.users.get_by_email(email)
        if user is None:
            raise NotFound("User not found.")
        self.credentials.reset_failures(user)
        return user

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _user(self, principal: Principal) -> User:
        user = self.users.get_by_id(principal.user_id)
        if user is None:
            raise NotFound("User not found.")
        return user

    def _record(
        self,
        action: SecurityAction,
        status: EventStatus,
        device: DeviceInfo,
        user: User | None = None,
        email: str | None = None,
        details: str | None = None,
        location: Location | None = None,
    ) -> None:
        self.events.append(
            SecurityEvent(
                action=action,
                status=status,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
                user_id=user.id if user else None,
                email=user.email if user else email,
                details=details,
                location=location,
            )
        )

    def _record_for(self, principal: Principal, action: SecurityAction, device: DeviceInfo, details: str) -> None:
        self.events.append(
            SecurityEvent(
                action=action,
                status=EventStatus.SUCCESS,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
                user_id=principal.user_id,
                email=principal.email,
                details=details,
            )
        )

    def _send(self, name: str, fn, *args) -> None:
        self.dispatcher.submit(name, fn, *args)

    def _alert(self, user: User, title: str, body: str, device: DeviceInfo) -> None:
        self._send(
            "security-alert",
            self.notifier.send_security_alert,
            user.email,
            title,
            body,
            device.ip_address,
            user.first_name,
        )


def require_role(principal: Principal, *roles: str) -> None:
    if principal.role not in roles:
        raise Forbidden()


def _still_valid(expires, clock: Clock) -> bool:
    return expires is not None and expires > clock()
