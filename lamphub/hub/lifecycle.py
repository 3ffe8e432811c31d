"""Connection lifecycle: registration handshake, heartbeat, disconnect cleanup.

State machine per connection::

    UNREGISTERED ──register(esp32, known MAC)──▶ REGISTERED_DEVICE ──┐
         │     └────register(android)─────────▶ REGISTERED_OBSERVER ─┤
         └──register(esp32, unknown MAC)──────────────────────────▶ CLOSED
                                                        close/error ─┘

Store failures never block in-memory bookkeeping: the registry insert on
connect and the registry removal on disconnect happen regardless, so the
durable status can lag behind the live registry until the next write.
"""

from __future__ import annotations

import asyncio
import logging

from lamphub.hub import messages
from lamphub.hub.connections import Connection, ConnectionState
from lamphub.hub.registry import ConnectionRegistry, ObserverSet
from lamphub.store import DeviceStore, normalize_mac

logger = logging.getLogger(__name__)

DEFAULT_PING_INTERVAL = 30.0

# RFC 6455 "policy violation"
_CLOSE_UNKNOWN_DEVICE = 1008


class LifecycleManager:
    """Keeps registry, observers and store in step with connection events."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        observers: ObserverSet,
        store: DeviceStore,
        ping_interval: float = DEFAULT_PING_INTERVAL,
    ) -> None:
        self.registry = registry
        self.observers = observers
        self.store = store
        self.ping_interval = ping_interval

    # ── Registration ───────────────────────────────────────────────

    async def register(self, conn: Connection, msg: dict) -> None:
        """Run the handshake for a ``register`` message."""
        if conn.state is not ConnectionState.UNREGISTERED:
            logger.warning("Ignoring register from %s: already %s", conn, conn.state.value)
            return

        client_type = msg.get("clientType")
        if client_type == messages.CLIENT_OBSERVER:
            await self._register_observer(conn)
        elif client_type == messages.CLIENT_DEVICE:
            mac = msg.get("mac")
            if not isinstance(mac, str) or not mac.strip():
                logger.warning("Device register without MAC from %s", conn)
                return
            await self._register_device(conn, normalize_mac(mac), msg)
        else:
            logger.warning("Unknown clientType from %s: %r", conn, client_type)

    async def _register_observer(self, conn: Connection) -> None:
        self.observers.add(conn)
        conn.state = ConnectionState.REGISTERED_OBSERVER
        await conn.send(messages.observer_welcome())
        logger.info("Android registered: %s (%d observers)", conn, len(self.observers))

    async def _register_device(self, conn: Connection, mac: str, msg: dict) -> None:
        logger.debug("Looking up MAC %s", mac)
        try:
            record = self.store.get_by_mac(mac)
        except Exception as e:
            logger.exception("Device lookup failed for %s", mac)
            await conn.send(messages.error(f"Erreur serveur: {e}"))
            return

        if record is None:
            logger.warning("MAC %s not registered, closing %s", mac, conn)
            await conn.send(messages.error("MAC non enregistrée. Installer via app Android."))
            await conn.close(code=_CLOSE_UNKNOWN_DEVICE, reason="unknown device")
            return

        lamp_id = record["id"]
        self.registry.register(mac, lamp_id, record.get("token"), conn)
        conn.state = ConnectionState.REGISTERED_DEVICE

        try:
            self.store.mark_connected(mac, messages.coerce_signal(msg.get("signal")))
        except Exception:
            logger.exception("Failed to persist CONNECTED for %s", lamp_id)

        await conn.send(messages.device_welcome(record))
        await self.observers.broadcast(messages.lamp_connected(lamp_id, mac))
        logger.info("ESP32 %s registered (MAC: %s)", lamp_id, mac)

    # ── Liveness ───────────────────────────────────────────────────

    def start_heartbeat(self, conn: Connection) -> asyncio.Task:
        """Spawn the ping loop for ``conn``; the caller cancels it on close."""
        return asyncio.create_task(self._heartbeat(conn), name=f"heartbeat-{conn.conn_id[:8]}")

    async def _heartbeat(self, conn: Connection) -> None:
        # Outbound only: a missing reply is not treated as a disconnect.
        while conn.is_open:
            await asyncio.sleep(self.ping_interval)
            if not conn.is_open:
                break
            await conn.send(messages.ping())

    # ── Disconnect ─────────────────────────────────────────────────

    async def handle_disconnect(self, conn: Connection) -> None:
        """Reconcile registry, store and observers after ``conn`` closed."""
        conn.state = ConnectionState.CLOSED

        address = self.registry.lookup_by_connection(conn)
        if address is not None:
            entry = self.registry.remove(address)
            logger.info("ESP32 disconnected: %s (%s)", entry.identity, address)
            try:
                self.store.mark_offline(address)
            except Exception:
                logger.exception("Failed to persist HORS_LIGNE for %s", entry.identity)
            await self.observers.broadcast(
                messages.lamp_disconnected(entry.identity, address)
            )

        if self.observers.remove(conn):
            logger.info("Android disconnected: %s (%d observers)", conn, len(self.observers))
