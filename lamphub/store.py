"""Persistent device store.

Thin data-access layer over the ``lampadaires`` table.  Only
:meth:`DeviceStore.install` and :meth:`DeviceStore.delete` run inside an
explicit transaction (they check-then-write); status writes commit one by one.

All ``sqlite3`` failures surface as :class:`DeviceStoreError`.
"""

from __future__ import annotations

import logging
import secrets
import sqlite3
from datetime import datetime, timezone
from typing import Any, Callable

from lamphub.db import get_db

logger = logging.getLogger(__name__)

STATUS_OFF = "OFF"
STATUS_CONNECTED = "CONNECTED"
STATUS_OFFLINE = "HORS_LIGNE"

DEFAULT_LOCATION = "Non spécifié"

_ID_ATTEMPTS = 100
_EDITABLE = ("latitude", "longitude", "altitude", "lieu_installation", "status")


class DeviceStoreError(Exception):
    """Raised when the underlying database fails."""


class DuplicateAddressError(DeviceStoreError):
    """Raised when installing a MAC address that is already registered."""

    def __init__(self, mac: str, existing_id: str) -> None:
        super().__init__(f"MAC already registered: {mac} ({existing_id})")
        self.mac = mac
        self.existing_id = existing_id


def normalize_mac(mac: str) -> str:
    return mac.strip().upper()


def generate_token() -> str:
    """64 hex characters of randomness."""
    return secrets.token_hex(32)


def generate_lamp_id() -> str:
    return f"LAMP{secrets.randbelow(9999) + 1:04d}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row(cur: sqlite3.Cursor) -> dict | None:
    r = cur.fetchone()
    if r is None:
        return None
    cols = [d[0] for d in cur.description]
    return dict(zip(cols, r))


def _rows(cur: sqlite3.Cursor) -> list[dict]:
    cols = [d[0] for d in cur.description] if cur.description else []
    return [dict(zip(cols, r)) for r in cur.fetchall()]


class DeviceStore:
    """Read and write device records."""

    def __init__(self, connect: Callable[[], sqlite3.Connection] = get_db) -> None:
        self._connect = connect

    # ── Reads ──────────────────────────────────────────────────────

    def get(self, lamp_id: str) -> dict | None:
        """Read a record by identity."""
        return self._fetch_one("SELECT * FROM lampadaires WHERE id = ?", (lamp_id,))

    def get_by_mac(self, mac: str) -> dict | None:
        """Read a record by network address."""
        return self._fetch_one(
            "SELECT * FROM lampadaires WHERE mac = ?", (normalize_mac(mac),)
        )

    def exists(self, mac: str) -> bool:
        return self._fetch_one(
            "SELECT id FROM lampadaires WHERE mac = ?", (normalize_mac(mac),)
        ) is not None

    def list_all(self) -> list[dict]:
        try:
            cur = self._connect().execute(
                "SELECT * FROM lampadaires ORDER BY created_at DESC, rowid DESC"
            )
            return _rows(cur)
        except sqlite3.Error as e:
            raise DeviceStoreError(str(e)) from e

    # ── Installation / administration ──────────────────────────────

    def install(
        self,
        mac: str,
        latitude: float,
        longitude: float,
        altitude: float | None = None,
        lieu_installation: str | None = None,
        date_installation: str | None = None,
    ) -> dict:
        """Create a record with a fresh identity and token.

        Raises :class:`DuplicateAddressError` if the MAC is already known.
        """
        mac = normalize_mac(mac)
        db = self._connect()
        try:
            with db:
                existing = db.execute(
                    "SELECT id FROM lampadaires WHERE mac = ?", (mac,)
                ).fetchone()
                if existing:
                    raise DuplicateAddressError(mac, existing[0])

                lamp_id = self._free_lamp_id(db)
                token = generate_token()
                now = _now()
                db.execute(
                    """INSERT INTO lampadaires
                       (id, mac, latitude, longitude, altitude, lieu_installation,
                        date_installation, token, status, last_update, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        lamp_id, mac, latitude, longitude, altitude or 0.0,
                        lieu_installation or DEFAULT_LOCATION, date_installation,
                        token, STATUS_OFF, now, now,
                    ),
                )
        except sqlite3.Error as e:
            raise DeviceStoreError(str(e)) from e

        logger.info("Lamp installed: %s (MAC: %s)", lamp_id, mac)
        return self.get(lamp_id)

    def update(self, lamp_id: str, **fields: Any) -> dict | None:
        """Apply the non-``None`` editable fields; return the new record or ``None``."""
        updates = {k: v for k, v in fields.items() if k in _EDITABLE and v is not None}
        updates["last_update"] = _now()
        sets = ", ".join(f"{k} = ?" for k in updates)
        self._execute(
            f"UPDATE lampadaires SET {sets} WHERE id = ?",
            (*updates.values(), lamp_id),
        )
        return self.get(lamp_id)

    def delete(self, lamp_id: str) -> bool:
        """Delete a record and retire its identity."""
        db = self._connect()
        try:
            with db:
                cur = db.execute("DELETE FROM lampadaires WHERE id = ?", (lamp_id,))
                if cur.rowcount == 0:
                    return False
                db.execute(
                    "INSERT OR IGNORE INTO retired_lamp_ids (id) VALUES (?)", (lamp_id,)
                )
        except sqlite3.Error as e:
            raise DeviceStoreError(str(e)) from e
        logger.info("Lamp deleted: %s", lamp_id)
        return True

    # ── Status writes (hub) ────────────────────────────────────────

    def set_status(
        self,
        lamp_id: str,
        status: str | None = None,
        signal: int | None = None,
        sw420_state: str | None = None,
    ) -> bool:
        """Telemetry update by identity. Returns ``False`` if no record matched."""
        updates: dict[str, Any] = {}
        if status is not None:
            updates["status"] = status
        if signal is not None:
            updates["signal"] = signal
        if sw420_state is not None:
            updates["sw420_state"] = sw420_state
        updates["last_update"] = _now()
        sets = ", ".join(f"{k} = ?" for k in updates)
        cur = self._execute(
            f"UPDATE lampadaires SET {sets} WHERE id = ?",
            (*updates.values(), lamp_id),
        )
        return cur.rowcount > 0

    def mark_connected(self, mac: str, signal: int | None = None) -> bool:
        cur = self._execute(
            """UPDATE lampadaires
               SET status = ?, signal = COALESCE(?, signal), last_update = ?
               WHERE mac = ?""",
            (STATUS_CONNECTED, signal, _now(), normalize_mac(mac)),
        )
        return cur.rowcount > 0

    def mark_offline(self, mac: str) -> bool:
        cur = self._execute(
            "UPDATE lampadaires SET status = ?, signal = 0, last_update = ? WHERE mac = ?",
            (STATUS_OFFLINE, _now(), normalize_mac(mac)),
        )
        return cur.rowcount > 0

    def reset_live_statuses(self) -> int:
        """Mark every lamp that claims to be live as offline (startup sweep)."""
        cur = self._execute(
            """UPDATE lampadaires SET status = ?, signal = 0, last_update = ?
               WHERE status NOT IN (?, ?)""",
            (STATUS_OFFLINE, _now(), STATUS_OFF, STATUS_OFFLINE),
        )
        return cur.rowcount

    # ── Internal ───────────────────────────────────────────────────

    def _fetch_one(self, query: str, params: tuple) -> dict | None:
        try:
            return _row(self._connect().execute(query, params))
        except sqlite3.Error as e:
            raise DeviceStoreError(str(e)) from e

    def _execute(self, query: str, params: tuple) -> sqlite3.Cursor:
        db = self._connect()
        try:
            cur = db.execute(query, params)
            db.commit()
            return cur
        except sqlite3.Error as e:
            raise DeviceStoreError(str(e)) from e

    def _free_lamp_id(self, db: sqlite3.Connection) -> str:
        for _ in range(_ID_ATTEMPTS):
            candidate = generate_lamp_id()
            taken = db.execute(
                """SELECT 1 FROM lampadaires WHERE id = ?
                   UNION ALL SELECT 1 FROM retired_lamp_ids WHERE id = ?""",
                (candidate, candidate),
            ).fetchone()
            if taken is None:
                return candidate
        raise DeviceStoreError("No free lamp identity available")
