"""
sessions/store.py -- SQLAlchemy Core persistence for sessions and devices.

Pattern: Repository + Data Mapper. SessionRegistry is the only code that
reads or writes the sessions and devices tables.

Concurrency:
  rotate_session() is a compare-and-set: the UPDATE matches on the session id
  AND the refresh token the caller presented AND is_active. Two concurrent
  refreshes with the same token race on one row; the database applies one
  UPDATE first, the second then matches zero rows and the caller reports the
  session as revoked. No read-then-write window exists.

  Revocation flips is_active and never deletes rows, so the audit trail of
  where an account was used survives logout.

  upsert_device() tries UPDATE first and INSERTs on a miss; if a concurrent
  login inserted the same (user_id, device_id) in between, the unique
  constraint fires and we fall back to the UPDATE.

Expiry: find_active_by_refresh_token() and list_active() exclude rows past
expires_at, so an expired session is inert even before deactivate_expired()
sweeps it.

Layer rule: imports only core/ (plus stdlib and third-party).
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from core.clock import Clock, from_iso, to_iso, utcnow
from core.database import create_store_engine
from core.errors import SystemFailure
from sessions.models import Device, DeviceInfo, Session

logger = logging.getLogger("vaultpass.sessions")

DEFAULT_SESSION_TTL = 7 * 24 * 60 * 60

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("refresh_token", Text, nullable=False, unique=True),
    Column("user_agent", Text, nullable=False),
    Column("ip_address", String(64), nullable=False),
    Column("device_id", String(32), nullable=False, index=True),
    Column("device_type", String(20)),
    Column("browser", String(50)),
    Column("os", String(50)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_activity", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
)

_devices = Table(
    "devices",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("device_id", String(32), nullable=False),
    Column("device_name", String(120), nullable=False),
    Column("device_type", String(20), nullable=False, server_default="unknown"),
    Column("browser", String(50)),
    Column("os", String(50)),
    Column("ip_address", String(64), nullable=False),
    Column("is_trusted", Integer, nullable=False, server_default="0"),
    Column("last_used", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("user_id", "device_id", name="uq_user_device"),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SessionRegistry:
    """Repository for Session and Device entities.

    Usage:
        registry = SessionRegistry("sqlite:///:memory:")
        session = registry.create_session(user_id, refresh_token, device_info)
        registry.rotate_session(session.id, refresh_token, new_refresh_token)
        registry.revoke_all(user_id)
    """

    def __init__(self, db_url: str, clock: Clock = utcnow) -> None:
        self.engine: Engine = create_store_engine(db_url)
        _metadata.create_all(self.engine)
        self.clock = clock

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(
        self,
        user_id: int,
        refresh_token: str,
        device: DeviceInfo,
        ttl_seconds: int = DEFAULT_SESSION_TTL,
    ) -> Session:
        """Insert an active session expiring ttl_seconds from now.

        Raises sqlalchemy.exc.IntegrityError if refresh_token is already bound
        to another session.
        """
        now = self.clock()
        expires_at = now + timedelta(seconds=ttl_seconds)
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.insert().values(
                    user_id=user_id,
                    refresh_token=refresh_token,
                    user_agent=device.user_agent,
                    ip_address=device.ip_address,
                    device_id=device.device_id,
                    device_type=device.device_type,
                    browser=device.browser,
                    os=device.os,
                    is_active=1,
                    last_activity=to_iso(now),
                    expires_at=to_iso(expires_at),
                    created_at=to_iso(now),
                )
            )
            session_id = result.inserted_primary_key[0]
        return Session(
            id=session_id,
            user_id=user_id,
            refresh_token=refresh_token,
            device=device,
            expires_at=expires_at,
            is_active=True,
            last_activity=now,
            created_at=now,
        )

    def rotate_session(self, session_id: int, current_token: str, new_token: str) -> bool:
        """Swap the stored refresh token and bump last_activity.

        Returns False if the session is inactive or no longer holds
        current_token (someone else rotated it first).
        """
        c = _sessions.c
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where((c.id == session_id) & (c.refresh_token == current_token) & (c.is_active == 1))
                .values(refresh_token=new_token, last_activity=to_iso(self.clock()))
            )
        return result.rowcount == 1

    def find_active_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        c = _sessions.c
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where(
                    (c.refresh_token == refresh_token) & (c.is_active == 1) & (c.expires_at > to_iso(self.clock()))
                )
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def find_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        """Lookup regardless of state (logout needs the owner of an expired session)."""
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.refresh_token == refresh_token)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_session(self, session_id: int) -> Optional[Session]:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_active(self, user_id: int) -> list[Session]:
        """Active, unexpired sessions for a user, most recently used first."""
        c = _sessions.c
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where((c.user_id == user_id) & (c.is_active == 1) & (c.expires_at > to_iso(self.clock())))
                .order_by(c.last_activity.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def revoke(self, session_id: int, user_id: Optional[int] = None) -> bool:
        """Deactivate one session. When user_id is given, ownership must match."""
        c = _sessions.c
        cond = (c.id == session_id) & (c.is_active == 1)
        if user_id is not None:
            cond = cond & (c.user_id == user_id)
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.update().where(cond).values(is_active=0))
        return result.rowcount > 0

    def revoke_all_except(self, user_id: int, keep_refresh_token: Optional[str]) -> int:
        """Deactivate every active session of user_id except the one holding keep_refresh_token."""
        c = _sessions.c
        cond = (c.user_id == user_id) & (c.is_active == 1)
        if keep_refresh_token:
            cond = cond & (c.refresh_token != keep_refresh_token)
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.update().where(cond).values(is_active=0))
        return result.rowcount

    def revoke_all(self, user_id: int) -> int:
        return self.revoke_all_except(user_id, None)

    def deactivate_expired(self) -> int:
        """Sweep: mark every still-active session past expires_at inactive."""
        c = _sessions.c
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where((c.is_active == 1) & (c.expires_at <= to_iso(self.clock())))
                .values(is_active=0)
            )
        if result.rowcount:
            logger.info("Deactivated %d expired sessions", result.rowcount)
        return result.rowcount

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def upsert_device(self, user_id: int, device: DeviceInfo) -> Device:
        """Create or refresh the (user_id, device.device_id) record.

        A refresh updates name, platform, IP, and last_used but never touches
        is_trusted. New devices start untrusted.
        """
        now_iso = to_iso(self.clock())
        values = dict(
            device_name=device.display_name,
            device_type=device.device_type,
            browser=device.browser,
            os=device.os,
            ip_address=device.ip_address,
            last_used=now_iso,
        )
        if not self._update_device(user_id, device.device_id, values):
            try:
                with self.engine.begin() as conn:
                    conn.execute(
                        _devices.insert().values(
                            user_id=user_id,
                            device_id=device.device_id,
                            is_trusted=0,
                            created_at=now_iso,
                            **values,
                        )
                    )
            except IntegrityError:
                self._update_device(user_id, device.device_id, values)
        found = self.get_device(user_id, device.device_id)
        if found is None:
            raise SystemFailure("Device row vanished during upsert.")
        return found

    def _update_device(self, user_id: int, device_id: str, values: dict) -> bool:
        c = _devices.c
        with self.engine.begin() as conn:
            result = conn.execute(
                _devices.update().where((c.user_id == user_id) & (c.device_id == device_id)).values(**values)
            )
        return result.rowcount > 0

    def get_device(self, user_id: int, device_id: str) -> Optional[Device]:
        c = _devices.c
        with self.engine.connect() as conn:
            row = conn.execute(
                _devices.select().where((c.user_id == user_id) & (c.device_id == device_id))
            ).fetchone()
        return _row_to_device(row) if row is not None else None

    def list_devices(self, user_id: int) -> list[Device]:
        """All known devices for a user, most recently used first."""
        c = _devices.c
        with self.engine.connect() as conn:
            rows = conn.execute(_devices.select().where(c.user_id == user_id).order_by(c.last_used.desc())).fetchall()
        return [_row_to_device(r) for r in rows]

    def trust_device(self, user_id: int, device_id: str) -> bool:
        c = _devices.c
        with self.engine.begin() as conn:
            result = conn.execute(
                _devices.update().where((c.user_id == user_id) & (c.device_id == device_id)).values(is_trusted=1)
            )
        return result.rowcount > 0

    def revoke_device(self, user_id: int, device_id: str) -> Optional[int]:
        """Delete a device and deactivate its sessions.

        Returns the number of sessions deactivated, or None if the device does
        not exist. Sessions are matched by the device fingerprint recorded at
        login, so sessions from the user's other devices stay active.
        """
        d, s = _devices.c, _sessions.c
        with self.engine.begin() as conn:
            deleted = conn.execute(_devices.delete().where((d.user_id == user_id) & (d.device_id == device_id)))
            if deleted.rowcount == 0:
                return None
            result = conn.execute(
                _sessions.update()
                .where((s.user_id == user_id) & (s.device_id == device_id) & (s.is_active == 1))
                .values(is_active=0)
            )
        return result.rowcount

    def revoke_all_devices_except(self, user_id: int, current_device_id: str) -> tuple[int, int]:
        """Delete every other device and deactivate their sessions. Returns (devices, sessions)."""
        d, s = _devices.c, _sessions.c
        with self.engine.begin() as conn:
            deleted = conn.execute(
                _devices.delete().where((d.user_id == user_id) & (d.device_id != current_device_id))
            )
            sessions = conn.execute(
                _sessions.update()
                .where((s.user_id == user_id) & (s.device_id != current_device_id) & (s.is_active == 1))
                .values(is_active=0)
            )
        return deleted.rowcount, sessions.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        refresh_token=row.refresh_token,
        device=DeviceInfo(
            user_agent=row.user_agent,
            ip_address=row.ip_address,
            device_id=row.device_id,
            device_type=row.device_type or "unknown",
            browser=row.browser or "Unknown",
            os=row.os or "Unknown",
        ),
        is_active=bool(row.is_active),
        last_activity=from_iso(row.last_activity),
        expires_at=_required_ts(row.expires_at),
        created_at=from_iso(row.created_at),
    )


def _row_to_device(row) -> Device:
    return Device(
        id=row.id,
        user_id=row.user_id,
        device_id=row.device_id,
        device_name=row.device_name,
        device_type=row.device_type,
        browser=row.browser or "Unknown",
        os=row.os or "Unknown",
        ip_address=row.ip_address,
        is_trusted=bool(row.is_trusted),
        last_used=from_iso(row.last_used),
        created_at=from_iso(row.created_at),
    )


def _required_ts(value: str) -> datetime:
    parsed = from_iso(value)
    if parsed is None:
        raise ValueError(f"Malformed timestamp in sessions table: {value!r}")
    return parsed
