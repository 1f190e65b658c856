"""
tests/test_database.py -- Shared engine construction for the stores.

Covers:
  - File-backed SQLite connections run in WAL mode
  - Every store builds its engine through the same helper
"""

from __future__ import annotations

from audit.store import SecurityEventLog
from auth.store import UserStore
from core.database import create_store_engine
from sessions.store import SessionRegistry


def test_sqlite_connections_use_wal(file_db_url) -> None:
    engine = create_store_engine(file_db_url)
    try:
        with engine.connect() as conn:
            assert conn.exec_driver_sql("PRAGMA journal_mode").scalar() == "wal"
    finally:
        engine.dispose()


def test_stores_share_the_wal_setup(file_db_url, clock) -> None:
    stores = [
        UserStore(file_db_url, clock=clock),
        SessionRegistry(file_db_url, clock=clock),
        SecurityEventLog(file_db_url, clock=clock),
    ]
    try:
        for store in stores:
            with store.engine.connect() as conn:
                assert conn.exec_driver_sql("PRAGMA journal_mode").scalar() == "wal"
    finally:
        for store in stores:
            store.close()
