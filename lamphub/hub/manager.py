"""Relay hub composition root.

Owns the connection registry and observer set and wires them into the
lifecycle manager and message router.  One instance lives on
``app.state.hub``; HTTP routes and the WebSocket endpoint reach it from there.
"""

from __future__ import annotations

import logging

from lamphub.config import RelaySettings
from lamphub.hub.connections import Connection
from lamphub.hub.lifecycle import LifecycleManager
from lamphub.hub.registry import ConnectionRegistry, ObserverSet
from lamphub.hub.router import MessageRouter
from lamphub.store import DeviceStore

logger = logging.getLogger(__name__)


class RelayHub:
    """Central object for all live-connection state."""

    def __init__(
        self,
        store: DeviceStore | None = None,
        settings: RelaySettings | None = None,
    ) -> None:
        self.settings = settings or RelaySettings()
        self.store = store or DeviceStore()
        self.registry = ConnectionRegistry()
        self.observers = ObserverSet()
        self.lifecycle = LifecycleManager(
            self.registry,
            self.observers,
            self.store,
            ping_interval=self.settings.ping_interval,
        )
        self.router = MessageRouter(
            self.registry,
            self.observers,
            self.store,
            self.lifecycle,
            enforce_device_token=self.settings.enforce_device_token,
        )

    # ── Connections ────────────────────────────────────────────────

    async def serve(self, conn: Connection) -> None:
        """Pump frames from ``conn`` into the router until it closes."""
        heartbeat = self.lifecycle.start_heartbeat(conn)
        try:
            while conn.is_open:
                raw = await conn.receive_text()
                if raw is None:
                    break
                try:
                    await self.router.dispatch(conn, raw)
                except Exception:
                    logger.exception("Error handling message from %s", conn)
        except Exception:
            logger.exception("Error on connection %s", conn)
        finally:
            heartbeat.cancel()
            await self.lifecycle.handle_disconnect(conn)

    async def broadcast(self, message: dict) -> int:
        """Push an event to every observer."""
        return await self.observers.broadcast(message)

    # ── Read path ──────────────────────────────────────────────────

    def with_presence(self, record: dict) -> dict:
        """Copy of ``record`` with a live ``is_connected`` flag."""
        return {**record, "is_connected": self.registry.is_live(record["mac"])}

    def reset_statuses(self) -> None:
        """Startup sweep: nothing is connected yet, so nothing is live."""
        try:
            count = self.store.reset_live_statuses()
        except Exception:
            logger.exception("Startup status reset failed")
            return
        if count:
            logger.info("Marked %d lamp(s) HORS_LIGNE at startup", count)
