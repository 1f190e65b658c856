"""
risk/engine.py -- Additive risk scoring for logins and password changes.

Pattern: Strategy-free rules engine. Each rule inspects the user's recent
security history (read through SecurityEventLog.count/latest only) and the
current request's DeviceInfo, and contributes a fixed number of points plus a
reason string. Rules are independent; the score is their sum.

Login rules (threshold 50 by default):
  +30  multiple failed attempts   >= 3 failed logins in the trailing 15 minutes
  +25  new IP                     IP absent from the last 10 successful logins
  +20  new device/browser         user agent absent from the same history
  +30  new country                resolved country absent from the countries
                                  recorded on that history
  +15  unusual hour               more than 5 logins in the history and the
                                  current UTC hour is > 6 hours from their mean
  +20  recent lockout             account is locked now, or an account_locked
                                  event was recorded in the trailing 24 hours

"Last 10 successful logins" means the 10 most recent within 30 days. Rules
that compare against history are skipped when the history is empty, so a
first-ever login scores 0 on them.

Password-change rules (threshold 40 by default):
  +40  new IP                     IP absent from successful login and password
                                  change events over the trailing 7 days
  +30  repeated password change   a password change was already recorded in
                                  the trailing 24 hours

Scores are not capped. A suspicious result appends a suspicious_activity
event (status warning); scores of 100 or more are logged at ERROR. The
engine never sends mail; the caller decides whether to alert the user.

The engine must run BEFORE the outcome of the current request is recorded
(before the login success event and before the lockout counters are reset),
otherwise the current request would appear in its own history.

Layer rule: imports core/, audit/, sessions/ only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from audit.models import EventFilter, EventStatus, SecurityAction, SecurityEvent
from core.clock import Clock, utcnow
from core.geolocation import Location
from sessions.models import DeviceInfo

logger = logging.getLogger("vaultpass.risk")

LOGIN_THRESHOLD = 50
PASSWORD_CHANGE_THRESHOLD = 40

_FAILED_WINDOW = timedelta(minutes=15)
_HISTORY_WINDOW = timedelta(days=30)
_HISTORY_SIZE = 10
_LOCKOUT_WINDOW = timedelta(hours=24)
_PASSWORD_IP_WINDOW = timedelta(days=7)
_PASSWORD_REPEAT_WINDOW = timedelta(hours=24)

CRITICAL_SCORE = 100


@dataclass
class RiskAssessment:
    score: int = 0
    suspicious: bool = False
    reasons: list[str] = field(default_factory=list)
    location: Optional[Location] = None  # resolved location of the current request, if any

    @property
    def level(self) -> str:
        if self.score >= CRITICAL_SCORE:
            return "critical"
        return "suspicious" if self.suspicious else "normal"

    def add(self, points: int, reason: str) -> None:
        self.score += points
        self.reasons.append(reason)


class RiskEngine:
    """Score security-relevant requests against the user's event history.

    events    -- audit.store.SecurityEventLog (read via count/latest, write via append)
    resolver  -- optional core.geolocation.LocationResolver; without one the
                 new-country rule is skipped
    """

    def __init__(
        self,
        events,
        resolver=None,
        login_threshold: int = LOGIN_THRESHOLD,
        password_change_threshold: int = PASSWORD_CHANGE_THRESHOLD,
        clock: Clock = utcnow,
    ) -> None:
        self.events = events
        self.resolver = resolver
        self.login_threshold = login_threshold
        self.password_change_threshold = password_change_threshold
        self.clock = clock

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def score_login(
        self,
        user_id: int,
        email: str,
        device: DeviceInfo,
        locked_until: Optional[datetime] = None,
    ) -> RiskAssessment:
        now = self.clock()
        result = RiskAssessment()

        failures = self.events.count(
            EventFilter(
                user_id=user_id,
                actions=(SecurityAction.LOGIN,),
                status=EventStatus.FAILURE,
                since=now - _FAILED_WINDOW,
            )
        )
        if failures >= 3:
            result.add(30, "multiple failed attempts")

        history = self.events.latest(
            EventFilter(
                user_id=user_id,
                actions=(SecurityAction.LOGIN,),
                status=EventStatus.SUCCESS,
                since=now - _HISTORY_WINDOW,
            ),
            _HISTORY_SIZE,
        )

        if history:
            if device.ip_address not in {e.ip_address for e in history}:
                result.add(25, "new IP")
            if device.user_agent not in {e.user_agent for e in history}:
                result.add(20, "new device/browser")

        if self.resolver is not None:
            result.location = self.resolver.resolve(device.ip_address)
            known_countries = {e.location.country for e in history if e.location and e.location.country}
            current = result.location.country if result.location else None
            if current and known_countries and current not in known_countries:
                result.add(30, "new country")

        if len(history) > 5:
            hours = [e.created_at.hour for e in history if e.created_at is not None]
            if hours and abs(now.hour - sum(hours) / len(hours)) > 6:
                result.add(15, "unusual hour")

        if self._recently_locked(user_id, locked_until, now):
            result.add(20, "recent lockout")

        result.suspicious = result.score >= self.login_threshold
        if result.suspicious:
            self._flag(user_id, email, device, result, "Suspicious login detected")
        return result

    def _recently_locked(self, user_id: int, locked_until: Optional[datetime], now: datetime) -> bool:
        if locked_until is not None:
            return True
        return (
            self.events.count(
                EventFilter(user_id=user_id, actions=(SecurityAction.ACCOUNT_LOCKED,), since=now - _LOCKOUT_WINDOW)
            )
            > 0
        )

    # ------------------------------------------------------------------
    # Password change
    # ------------------------------------------------------------------

    def score_password_change(self, user_id: int, email: str, device: DeviceInfo) -> RiskAssessment:
        now = self.clock()
        result = RiskAssessment()

        recent = self.events.latest(
            EventFilter(
                user_id=user_id,
                actions=(SecurityAction.LOGIN, SecurityAction.PASSWORD_CHANGE),
                status=EventStatus.SUCCESS,
                since=now - _PASSWORD_IP_WINDOW,
            ),
            _HISTORY_SIZE,
        )
        if recent and device.ip_address not in {e.ip_address for e in recent}:
            result.add(40, "new IP")

        prior_changes = self.events.count(
            EventFilter(
                user_id=user_id,
                actions=(SecurityAction.PASSWORD_CHANGE,),
                since=now - _PASSWORD_REPEAT_WINDOW,
            )
        )
        if prior_changes > 0:
            result.add(30, "multiple password changes")

        result.suspicious = result.score >= self.password_change_threshold
        if result.suspicious:
            self._flag(user_id, email, device, result, "Suspicious password change")
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _flag(self, user_id: int, email: str, device: DeviceInfo, result: RiskAssessment, label: str) -> None:
        detail = f"{label}: {', '.join(result.reasons)} (score {result.score})"
        level = logging.ERROR if result.score >= CRITICAL_SCORE else logging.WARNING
        logger.log(level, "User %s: %s", user_id, detail)
        self.events.append(
            SecurityEvent(
                action=SecurityAction.SUSPICIOUS_ACTIVITY,
                status=EventStatus.WARNING,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
                user_id=user_id,
                email=email,
                details=detail,
                location=result.location,
            )
        )
