"""
sessions/models.py -- Domain dataclasses for sessions and known devices.

Pattern: Data class (pure data container, zero logic).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class DeviceInfo:
    """What we can tell about the client from one request.

    Built by sessions.fingerprint.parse_device_info(); device_id is the
    deterministic fingerprint of (user_agent, ip_address).
    """

    user_agent: str
    ip_address: str
    device_id: str
    device_type: str = "unknown"  # "mobile" | "tablet" | "desktop" | "unknown"
    browser: str = "Unknown"
    os: str = "Unknown"

    @property
    def display_name(self) -> str:
        return f"{self.browser} on {self.os}"


@dataclass
class Session:
    """A refresh-token-bound login session.

    refresh_token is unique across all sessions. A session is usable only
    while is_active and before expires_at; rows are deactivated, never deleted.
    """

    user_id: int
    refresh_token: str
    device: DeviceInfo
    expires_at: datetime
    is_active: bool = True
    last_activity: Optional[datetime] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class Device:
    """A client device seen on a successful login, keyed by (user_id, device_id)."""

    user_id: int
    device_id: str
    device_name: str
    ip_address: str
    device_type: str = "unknown"
    browser: str = "Unknown"
    os: str = "Unknown"
    is_trusted: bool = False
    last_used: Optional[datetime] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None
