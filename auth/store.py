"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts.

Pattern: Repository + Data Mapper (same as sessions/store.py and audit/store.py).
UserStore is the repository; _row_to_user is the mapper. Service code never
touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Backup codes, email-verification tokens and password-reset tokens are
  stored as HMAC-SHA256 digests (see auth/passwords.py hash_token). The store
  only ever compares digests.

Atomicity:
  record_failed_login() runs up to three guarded UPDATEs in one transaction.
  Each increments in SQL over the row's current values, and the first one
  takes the write lock, so concurrent failures on the same account serialize
  in the database and none is lost. The first guard that matches wins:

      expired lock                     -> failed_attempts = 1, lock cleared
      unlocked and count+1 >= limit    -> failed_attempts + 1, lock set
      otherwise                        -> failed_attempts + 1, lock kept

  newly_locked is reported only when the second guard matched (or the first,
  for a threshold of 1).

  consume_backup_code() is one DELETE; the code is accepted iff exactly one
  row was removed. Two requests racing on the same code cannot both see
  rowcount == 1.

  begin_two_factor(), clear_two_factor() and replace_backup_codes() each run
  in a single transaction so the secret and the code set never disagree.

Layer rule: imports only core/ (plus stdlib and third-party) and auth.models.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import LockoutState, User
from core.clock import Clock, from_iso, to_iso, utcnow
from core.database import create_store_engine

logger = logging.getLogger("vaultpass.auth")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # stored lower-cased
    Column("username", String(30), unique=True),  # NULLs are distinct, so optional is fine
    Column("hashed_password", Text),
    Column("first_name", String(50)),
    Column("last_name", String(50)),
    Column("role", String(20), nullable=False, server_default="user"),
    Column("is_email_verified", Integer, nullable=False, server_default="0"),
    Column("email_verification_token", String(64), index=True),  # HMAC digest
    Column("email_verification_expires", String(32)),
    Column("password_reset_token", String(64), index=True),  # HMAC digest
    Column("password_reset_expires", String(32)),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("two_factor_enabled", Integer, nullable=False, server_default="0"),
    Column("two_factor_secret", String(64)),
    Column("last_login", String(32)),
    Column("last_login_ip", String(64)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_backup_codes = Table(
    "backup_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("code_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("user_id", "code_hash", name="uq_user_backup_code"),
)

# Fields update_user() will write. Everything else goes through a dedicated
# method so the atomic paths cannot be bypassed.
_UPDATABLE = frozenset(
    {
        "email",
        "username",
        "hashed_password",
        "first_name",
        "last_name",
        "role",
        "is_email_verified",
        "email_verification_token",
        "email_verification_expires",
        "password_reset_token",
        "password_reset_expires",
    }
)


def _encode(fields: dict) -> dict:
    """Convert Python values to their column representation (bool -> int, datetime -> ISO)."""
    out = {}
    for key, value in fields.items():
        if isinstance(value, bool):
            value = 1 if value else 0
        elif isinstance(value, datetime):
            value = to_iso(value)
        out[key] = value
    return out


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities and their backup codes.

    Usage:
        store = UserStore("sqlite:///:memory:")
        user_id = store.create_user(User(email="a@example.com", hashed_password=hash_password("...")))
        store.record_failed_login(user_id, threshold=5, lock_seconds=1800)
        store.close()
    """

    def __init__(self, db_url: str, clock: Clock = utcnow) -> None:
        self.engine: Engine = create_store_engine(db_url)
        _metadata.create_all(self.engine)
        self.clock = clock

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email or username already
        exists. Callers check first and treat IntegrityError as a concurrent
        registration that won the race.
        """
        now = to_iso(self.clock())
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email.strip().lower(),
                    username=user.username,
                    hashed_password=user.hashed_password,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    role=user.role,
                    is_email_verified=1 if user.is_email_verified else 0,
                    email_verification_token=user.email_verification_token,
                    email_verification_expires=_iso_or_none(user.email_verification_expires),
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        return self._get_one(_users.c.id == user_id)

    def get_by_email(self, email: str) -> User | None:
        """Case-insensitive: emails are stored lower-cased."""
        return self._get_one(_users.c.email == email.strip().lower())

    def get_by_username(self, username: str) -> User | None:
        return self._get_one(_users.c.username == username)

    def get_by_verification_token_hash(self, token_hash: str) -> User | None:
        """Lookup ignores expiry; the caller compares email_verification_expires to the clock."""
        return self._get_one(_users.c.email_verification_token == token_hash)

    def get_by_reset_token_hash(self, token_hash: str) -> User | None:
        return self._get_one(_users.c.password_reset_token == token_hash)

    def _get_one(self, cond) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(cond)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by id. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.id)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update plain profile/credential fields on an existing user.

        Accepted fields are listed in _UPDATABLE; anything else raises
        ValueError. Lockout and 2FA state have their own atomic methods.
        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unknown or protected user fields: {sorted(unknown)!r}")
        if "email" in fields and fields["email"]:
            fields["email"] = fields["email"].strip().lower()
        values = _encode(fields)
        values["updated_at"] = to_iso(self.clock())
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Lockout (atomic)
    # ------------------------------------------------------------------

    def record_failed_login(self, user_id: int, threshold: int, lock_seconds: int) -> LockoutState | None:
        """Atomically count one failed login and lock the account at the threshold.

        Returns the resulting state, or None if the user does not exist.
        newly_locked is True only for the failure that set the lock: it comes
        from which guarded UPDATE matched, never from comparing timestamps.
        """
        now = self.clock()
        now_iso = to_iso(now)
        lock_iso = to_iso(now + timedelta(seconds=lock_seconds))
        c = _users.c
        account = c.id == user_id

        expired = and_(c.locked_until.isnot(None), c.locked_until <= now_iso)
        reaches_threshold = and_(c.locked_until.is_(None), c.failed_attempts + 1 >= threshold)

        with self.engine.begin() as conn:
            # The first UPDATE takes the write lock, so the guards below see a
            # row no other failure can change until commit.
            restarted = conn.execute(
                _users.update()
                .where(account, expired)
                .values(
                    failed_attempts=1,
                    # A restarted count of 1 only locks when threshold <= 1.
                    locked_until=lock_iso if threshold <= 1 else None,
                    updated_at=now_iso,
                )
            ).rowcount
            if restarted:
                newly_locked = threshold <= 1
            else:
                newly_locked = bool(
                    conn.execute(
                        _users.update()
                        .where(account, reaches_threshold)
                        .values(failed_attempts=c.failed_attempts + 1, locked_until=lock_iso, updated_at=now_iso)
                    ).rowcount
                )
                if not newly_locked:
                    counted = conn.execute(
                        _users.update()
                        .where(account)
                        .values(failed_attempts=c.failed_attempts + 1, updated_at=now_iso)
                    ).rowcount
                    if counted == 0:
                        return None
            row = conn.execute(select(c.failed_attempts, c.locked_until).where(account)).fetchone()

        return LockoutState(
            failed_attempts=row.failed_attempts,
            locked_until=from_iso(row.locked_until),
            newly_locked=newly_locked,
        )

    def reset_failed_logins(self, user_id: int) -> None:
        """Zero the counter and clear the lock together."""
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(failed_attempts=0, locked_until=None, updated_at=to_iso(self.clock()))
            )

    def stamp_login(self, user_id: int, ip_address: str) -> None:
        """Record the time and IP of a successful authentication."""
        now = to_iso(self.clock())
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(last_login=now, last_login_ip=ip_address, updated_at=now)
            )

    # ------------------------------------------------------------------
    # Two-factor state and backup codes
    # ------------------------------------------------------------------

    def begin_two_factor(self, user_id: int, secret: str, code_hashes: Iterable[str]) -> bool:
        """Store a pending secret and a fresh backup-code set.

        Overwrites any earlier pending secret. Returns False (and writes
        nothing) if 2FA is already enabled for the user.
        """
        c = _users.c
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((c.id == user_id) & (c.two_factor_enabled == 0))
                .values(two_factor_secret=secret, updated_at=to_iso(self.clock()))
            )
            if result.rowcount == 0:
                return False
            self._write_codes(conn, user_id, code_hashes)
        return True

    def enable_two_factor(self, user_id: int) -> bool:
        """Flip pending -> enabled. False if there is no pending secret."""
        c = _users.c
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((c.id == user_id) & (c.two_factor_enabled == 0) & c.two_factor_secret.isnot(None))
                .values(two_factor_enabled=1, updated_at=to_iso(self.clock()))
            )
        return result.rowcount > 0

    def clear_two_factor(self, user_id: int) -> None:
        """Disable 2FA: drop the secret and every backup code in one transaction."""
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(two_factor_enabled=0, two_factor_secret=None, updated_at=to_iso(self.clock()))
            )
            conn.execute(_backup_codes.delete().where(_backup_codes.c.user_id == user_id))

    def replace_backup_codes(self, user_id: int, code_hashes: Iterable[str]) -> None:
        with self.engine.begin() as conn:
            self._write_codes(conn, user_id, code_hashes)

    def _write_codes(self, conn, user_id: int, code_hashes: Iterable[str]) -> None:
        conn.execute(_backup_codes.delete().where(_backup_codes.c.user_id == user_id))
        now = to_iso(self.clock())
        rows = [{"user_id": user_id, "code_hash": h, "created_at": now} for h in dict.fromkeys(code_hashes)]
        if rows:
            conn.execute(_backup_codes.insert(), rows)

    def consume_backup_code(self, user_id: int, code_hash: str) -> bool:
        """Find-and-remove in one statement. True iff this call removed the code."""
        b = _backup_codes.c
        with self.engine.begin() as conn:
            result = conn.execute(_backup_codes.delete().where((b.user_id == user_id) & (b.code_hash == code_hash)))
        return result.rowcount == 1

    def count_backup_codes(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_backup_codes).where(_backup_codes.c.user_id == user_id)
            ).scalar()
        return result or 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _iso_or_none(value: datetime | None) -> str | None:
    return to_iso(value) if value is not None else None


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        hashed_password=row.hashed_password,
        first_name=row.first_name,
        last_name=row.last_name,
        role=row.role,
        is_email_verified=bool(row.is_email_verified),
        email_verification_token=row.email_verification_token,
        email_verification_expires=from_iso(row.email_verification_expires),
        password_reset_token=row.password_reset_token,
        password_reset_expires=from_iso(row.password_reset_expires),
        failed_attempts=row.failed_attempts,
        locked_until=from_iso(row.locked_until),
        two_factor_enabled=bool(row.two_factor_enabled),
        two_factor_secret=row.two_factor_secret,
        last_login=from_iso(row.last_login),
        last_login_ip=row.last_login_ip,
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )
