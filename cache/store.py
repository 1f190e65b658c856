"""
cache/store.py -- SQLite-backed cache for IP geolocation lookups.

Avoids repeated calls to the geolocation provider for the same address. A
user logging in several times a day from one IP costs a single lookup per
TTL window (default 24 hours). Negative results are cached too, so a
provider that has nothing for an address is not asked again every login.

Usage:
    cache = LocationCache()
    hit, data = cache.get("203.0.113.7")   # (False, None) on miss
    cache.set("203.0.113.7", {"country": "Norway", ...})
    cache.set("198.51.100.1", None)        # negative entry
    cache.purge_expired()                  # call periodically to trim old entries
"""

import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Optional, Union

_DEFAULT_DB = Path(__file__).parent / "vaultpass_geo.db"
_DEFAULT_TTL = 60 * 60 * 24  # 24 hours in seconds

_DDL = """
CREATE TABLE IF NOT EXISTS geo_cache (
    ip          TEXT PRIMARY KEY,
    data        TEXT,
    cached_at   REAL NOT NULL
);
"""


class LocationCache:
    def __init__(self, db_path: Union[Path, str] = _DEFAULT_DB, ttl: int = _DEFAULT_TTL) -> None:
        self.ttl = ttl
        # Lookups run on background worker threads; one shared connection
        # guarded by a lock keeps sqlite3 happy.
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        if str(db_path) != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def get(self, ip: str) -> tuple[bool, Optional[dict]]:
        """Return (hit, data). data is None for a cached negative result."""
        with self._lock:
            row = self._conn.execute(
                "SELECT data, cached_at FROM geo_cache WHERE ip = ?",
                (ip,),
            ).fetchone()
        if row is None:
            return False, None
        data, cached_at = row
        if time.time() - cached_at > self.ttl:
            self._delete(ip)
            return False, None
        return True, (json.loads(data) if data is not None else None)

    def set(self, ip: str, data: Optional[dict]) -> None:
        """Store data for ip, replacing any existing entry."""
        payload = json.dumps(data) if data is not None else None
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO geo_cache (ip, data, cached_at) VALUES (?, ?, ?)",
                (ip, payload, time.time()),
            )
            self._conn.commit()

    def purge_expired(self) -> int:
        """Delete all entries older than TTL. Returns number of rows removed."""
        cutoff = time.time() - self.ttl
        with self._lock:
            cursor = self._conn.execute("DELETE FROM geo_cache WHERE cached_at < ?", (cutoff,))
            self._conn.commit()
        return cursor.rowcount

    def _delete(self, ip: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM geo_cache WHERE ip = ?", (ip,))
            self._conn.commit()

    def close(self) -> None:
        self._conn.close()
