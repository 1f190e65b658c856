"""
audit/store.py -- SQLAlchemy Core persistence for the security event trail.

Pattern: Repository + Data Mapper (same as auth/store.py and sessions/store.py).
SecurityEventLog is the repository; _row_to_event is the mapper.

Contract:
  append() is a pure insert that NEVER fails the caller. A broken database
  here must not turn a successful login into a 500, so SQLAlchemy errors are
  logged and swallowed; append() returns None in that case.

  Rows are never updated after insert except by attach_location(), the
  best-effort enrichment step. It only fills a row whose location is still
  empty, so a late or duplicated enrichment is harmless.

  The risk engine reads history exclusively through count() and latest().

Layer rule: imports only core/ (plus stdlib and third-party).
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from audit.models import EventFilter, EventPage, EventStatus, SecurityAction, SecurityEvent, SecuritySummary
from core.clock import Clock, from_iso, to_iso, utcnow
from core.database import create_store_engine
from core.geolocation import Location

logger = logging.getLogger("vaultpass.audit")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_events = Table(
    "security_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, index=True),  # NULL for unknown-account attempts
    Column("email", String(255), index=True),
    Column("action", String(40), nullable=False, index=True),
    Column("status", String(10), nullable=False),
    Column("ip_address", String(64), nullable=False),
    Column("user_agent", Text, nullable=False),
    Column("details", Text),
    Column("country", String(100)),
    Column("city", String(100)),
    Column("latitude", Float),
    Column("longitude", Float),
    Column("timezone", String(64)),
    Column("created_at", String(32), nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SecurityEventLog:
    """Append-only security event log.

    resolver/dispatcher are optional. When both are given, every appended
    event without a location gets a background lookup of its IP address.

    Usage:
        log = SecurityEventLog("sqlite:///:memory:")
        log.append(SecurityEvent(action=SecurityAction.LOGIN, status=EventStatus.SUCCESS,
                                 ip_address="203.0.113.7", user_agent="curl/8", user_id=1))
        page = log.query(EventFilter(user_id=1), page=1, limit=20)
    """

    def __init__(self, db_url: str, resolver=None, dispatcher=None, clock: Clock = utcnow) -> None:
        self.engine: Engine = create_store_engine(db_url)
        _metadata.create_all(self.engine)
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.clock = clock

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(self, ev: SecurityEvent) -> Optional[int]:
        """Insert ev and return its id. Returns None (and logs) on storage failure."""
        created = ev.created_at or self.clock()
        loc = ev.location
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _events.insert().values(
                        user_id=ev.user_id,
                        email=ev.email.lower() if ev.email else None,
                        action=SecurityAction(ev.action).value,
                        status=EventStatus(ev.status).value,
                        ip_address=ev.ip_address,
                        user_agent=ev.user_agent,
                        details=ev.details,
                        country=loc.country if loc else None,
                        city=loc.city if loc else None,
                        latitude=loc.latitude if loc else None,
                        longitude=loc.longitude if loc else None,
                        timezone=loc.timezone if loc else None,
                        created_at=to_iso(created),
                    )
                )
                event_id = result.inserted_primary_key[0]
        except SQLAlchemyError:
            logger.warning("Failed to record security event %s", ev.action, exc_info=True)
            return None

        ev.id = event_id
        ev.created_at = created
        if loc is None and self.resolver is not None and self.dispatcher is not None:
            self.dispatcher.submit("geo-enrich", self._enrich, event_id, ev.ip_address)
        return event_id

    def attach_location(self, event_id: int, location: Location) -> bool:
        """Fill in location on an event that has none yet. False if nothing changed."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _events.update()
                .where((_events.c.id == event_id) & (_events.c.country.is_(None)))
                .values(
                    country=location.country,
                    city=location.city,
                    latitude=location.latitude,
                    longitude=location.longitude,
                    timezone=location.timezone,
                )
            )
        return result.rowcount > 0

    def _enrich(self, event_id: int, ip: str) -> None:
        location = self.resolver.resolve(ip)
        if location is None:
            return
        if not self.attach_location(event_id, location):
            logger.debug("Event %s already enriched or gone; skipping location", event_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def query(self, flt: EventFilter, page: int = 1, limit: int = 20) -> EventPage:
        """Return one page of events (newest first) plus the total match count."""
        page = max(page, 1)
        limit = max(limit, 1)
        where = _where(flt)
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_events).where(*where)).scalar() or 0
            rows = conn.execute(
                _events.select()
                .where(*where)
                .order_by(_events.c.created_at.desc(), _events.c.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).fetchall()
        return EventPage(items=[_row_to_event(r) for r in rows], total=total, page=page, limit=limit)

    def count(self, flt: EventFilter) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_events).where(*_where(flt))).scalar() or 0

    def latest(self, flt: EventFilter, limit: int) -> list[SecurityEvent]:
        """Most recent `limit` events matching flt, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _events.select()
                .where(*_where(flt))
                .order_by(_events.c.created_at.desc(), _events.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def summarize(self, user_id: int) -> SecuritySummary:
        """Counts for the account security overview, plus the last 10 events."""
        login = (SecurityAction.LOGIN,)
        return SecuritySummary(
            total_events=self.count(EventFilter(user_id=user_id)),
            successful_logins=self.count(EventFilter(user_id=user_id, actions=login, status=EventStatus.SUCCESS)),
            failed_logins=self.count(EventFilter(user_id=user_id, actions=login, status=EventStatus.FAILURE)),
            suspicious_last_30_days=self.count(
                EventFilter(
                    user_id=user_id,
                    actions=(SecurityAction.SUSPICIOUS_ACTIVITY,),
                    since=self.clock() - timedelta(days=30),
                )
            ),
            recent=self.latest(EventFilter(user_id=user_id), 10),
        )

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Helpers / mappers
# ---------------------------------------------------------------------------


def _where(flt: EventFilter) -> list:
    c = _events.c
    clauses = []
    if flt.user_id is not None:
        clauses.append(c.user_id == flt.user_id)
    if flt.email:
        clauses.append(c.email == flt.email.lower())
    if flt.actions:
        clauses.append(c.action.in_([SecurityAction(a).value for a in flt.actions]))
    if flt.status is not None:
        clauses.append(c.status == EventStatus(flt.status).value)
    if flt.since is not None:
        clauses.append(c.created_at >= to_iso(flt.since))
    if flt.until is not None:
        clauses.append(c.created_at < to_iso(flt.until))
    return clauses


def _row_to_event(row) -> SecurityEvent:
    location = None
    if row.country:
        location = Location(
            country=row.country,
            city=row.city,
            latitude=row.latitude,
            longitude=row.longitude,
            timezone=row.timezone,
        )
    return SecurityEvent(
        id=row.id,
        user_id=row.user_id,
        email=row.email,
        action=SecurityAction(row.action),
        status=EventStatus(row.status),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        details=row.details,
        location=location,
        created_at=from_iso(row.created_at),
    )
