"""
audit/models.py -- Domain dataclasses for the security event trail.

Pattern: Data class (pure data container, zero logic). The store owns the work.

SecurityAction is a closed vocabulary. Anything the services want to record
must map onto one of these values; free text goes in `details`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from core.geolocation import Location


class SecurityAction(str, Enum):
    LOGIN = "login"
    LOGOUT = "logout"
    REGISTER = "register"
    PASSWORD_CHANGE = "password_change"
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"
    TWO_FACTOR_ENABLED = "2fa_enabled"
    TWO_FACTOR_DISABLED = "2fa_disabled"
    TWO_FACTOR_VERIFIED = "2fa_verified"
    SESSION_CREATED = "session_created"
    SESSION_REVOKED = "session_revoked"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    ACCOUNT_LOCKED = "account_locked"
    PROFILE_UPDATE = "profile_update"


class EventStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


@dataclass
class SecurityEvent:
    """One append-only audit row.

    user_id is None for pre-authentication events against unknown accounts;
    email is kept for those so attempts can still be grouped. location is
    filled in after the fact by the enrichment task, if at all.
    """

    action: SecurityAction
    status: EventStatus
    ip_address: str
    user_agent: str
    user_id: Optional[int] = None
    email: Optional[str] = None
    details: Optional[str] = None
    location: Optional[Location] = None
    created_at: Optional[datetime] = None  # set by the store on insert
    id: Optional[int] = None


@dataclass
class EventFilter:
    """Query predicate. Unset fields do not filter. since is inclusive, until exclusive."""

    user_id: Optional[int] = None
    email: Optional[str] = None
    actions: tuple[SecurityAction, ...] = ()
    status: Optional[EventStatus] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None


@dataclass
class EventPage:
    items: list[SecurityEvent]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return -(-self.total // self.limit) if self.limit else 0


@dataclass
class SecuritySummary:
    total_events: int
    successful_logins: int
    failed_logins: int
    suspicious_last_30_days: int
    recent: list[SecurityEvent] = field(default_factory=list)
