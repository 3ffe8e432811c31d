"""In-memory connection registry and observer set.

Both collections live on the event loop thread and are only touched from
coroutines running there.  Nothing here is persisted; after a restart every
device is offline until it registers again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from lamphub.hub.connections import Connection, ConnectionState, fan_out
from lamphub.store import normalize_mac

logger = logging.getLogger(__name__)


@dataclass
class LiveEntry:
    """A device connection that completed the registration handshake."""

    address: str
    identity: str
    token: str | None
    connection: Connection


class ConnectionRegistry:
    """Network address → live device connection."""

    def __init__(self) -> None:
        self._entries: dict[str, LiveEntry] = {}
        self._by_conn: dict[str, str] = {}  # conn_id → address

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, address: str) -> bool:
        return self.is_live(address)

    def register(
        self,
        address: str,
        identity: str,
        token: str | None,
        connection: Connection,
    ) -> LiveEntry:
        """Insert or replace the entry for ``address``.

        A superseded connection is left open; it is only dropped from the
        reverse index so its own close event no longer maps to this device,
        and put back to UNREGISTERED so it may register again.
        """
        address = normalize_mac(address)
        previous = self._entries.get(address)
        if previous is not None and previous.connection.conn_id != connection.conn_id:
            self._by_conn.pop(previous.connection.conn_id, None)
            if previous.connection.state is ConnectionState.REGISTERED_DEVICE:
                previous.connection.state = ConnectionState.UNREGISTERED
            logger.warning(
                "Device %s re-registered; superseding %s with %s",
                address, previous.connection, connection,
            )
        entry = LiveEntry(address, identity, token, connection)
        self._entries[address] = entry
        self._by_conn[connection.conn_id] = address
        return entry

    def lookup_by_connection(self, connection: Connection) -> str | None:
        return self._by_conn.get(connection.conn_id)

    def entry_for(self, connection: Connection) -> LiveEntry | None:
        address = self.lookup_by_connection(connection)
        return self._entries.get(address) if address else None

    def remove(self, address: str) -> LiveEntry | None:
        entry = self._entries.pop(normalize_mac(address), None)
        if entry is not None:
            self._by_conn.pop(entry.connection.conn_id, None)
        return entry

    def get(self, address: str) -> LiveEntry | None:
        return self._entries.get(normalize_mac(address))

    def is_live(self, address: str) -> bool:
        return normalize_mac(address) in self._entries

    def find_by_identity(self, identity: object) -> LiveEntry | None:
        """First entry with an open connection whose identity equals ``identity``.

        Comparison is strict: a non-string target never matches.
        """
        if not isinstance(identity, str):
            return None
        for entry in self._entries.values():
            if entry.identity == identity and entry.connection.is_open:
                return entry
        return None

    def entries(self) -> list[LiveEntry]:
        return list(self._entries.values())


class ObserverSet:
    """Live observer (supervision app) connections, keyed by connection id."""

    def __init__(self) -> None:
        self._observers: dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self._observers)

    def __contains__(self, connection: Connection) -> bool:
        return connection.conn_id in self._observers

    def add(self, connection: Connection) -> None:
        self._observers[connection.conn_id] = connection

    def remove(self, connection: Connection) -> bool:
        return self._observers.pop(connection.conn_id, None) is not None

    async def broadcast(self, message: dict) -> int:
        """Best-effort fan-out to every open observer (see :func:`fan_out`).

        Closed observers are skipped, not pruned; their close event does that.
        """
        return await fan_out(self._observers.values(), message)
