"""Database initialisation for the relay hub.

Creates the SQLite device registry.  Unless :func:`set_db_path` is called,
the path comes from :attr:`lamphub.config.RelaySettings.database`
(``RELAY_DB_PATH``, or ``RELAY_DATA_DIR``/lamphub.db).

Usage::

    from lamphub.db import get_db, init_db
    init_db()                  # idempotent, safe to call multiple times
    conn = get_db()            # returns a per-thread connection
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

from lamphub.config import RelaySettings

_DB_PATH: Path | None = None
_LOCAL = threading.local()


def _db_path() -> Path:
    global _DB_PATH
    if _DB_PATH is None:
        _DB_PATH = RelaySettings.from_env().database
        _DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    return _DB_PATH


def set_db_path(path: str | Path) -> None:
    """Override the database path (useful for tests)."""
    global _DB_PATH, _LOCAL
    _DB_PATH = Path(path)
    _LOCAL = threading.local()


def get_db() -> sqlite3.Connection:
    """Return a per-thread SQLite connection (WAL mode)."""
    conn = getattr(_LOCAL, "conn", None)
    if conn is None:
        conn = sqlite3.connect(str(_db_path()), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        _LOCAL.conn = conn
    return conn


def init_db(path: str | Path | None = None) -> None:
    """Create all tables (idempotent, safe to run multiple times)."""
    if path:
        set_db_path(path)
    conn = get_db()
    _create_schema(conn)
    conn.commit()


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS lampadaires (
    id                 TEXT PRIMARY KEY,
    mac                TEXT UNIQUE NOT NULL,
    latitude           REAL,
    longitude          REAL,
    altitude           REAL DEFAULT 0.0,
    lieu_installation  TEXT,
    date_installation  TEXT,
    status             TEXT DEFAULT 'OFF',
    sw420_state        TEXT DEFAULT 'INACTIVE',
    signal             INTEGER DEFAULT 0,
    token              TEXT,
    last_update        TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    created_at         TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_lampadaires_mac      ON lampadaires(mac);
CREATE INDEX IF NOT EXISTS idx_lampadaires_status   ON lampadaires(status);
CREATE INDEX IF NOT EXISTS idx_lampadaires_location ON lampadaires(latitude, longitude);

-- Identities of deleted lamps; never handed out again.
CREATE TABLE IF NOT EXISTS retired_lamp_ids (
    id          TEXT PRIMARY KEY,
    retired_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""


def _create_schema(conn: sqlite3.Connection) -> None:
    """Execute all CREATE TABLE / INDEX statements in one script."""
    conn.executescript(_SCHEMA_SQL)
