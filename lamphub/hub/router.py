"""Inbound message dispatch and outbound routing."""

from __future__ import annotations

import json
import logging
from typing import Awaitable, Callable

from lamphub.hub import messages
from lamphub.hub.connections import Connection, fan_out
from lamphub.hub.lifecycle import LifecycleManager
from lamphub.hub.registry import ConnectionRegistry, ObserverSet
from lamphub.store import DeviceStore

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Connection, dict], Awaitable[None]]


class MessageRouter:
    """Parses inbound frames and routes them by ``type``."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        observers: ObserverSet,
        store: DeviceStore,
        lifecycle: LifecycleManager,
        enforce_device_token: bool = False,
    ) -> None:
        self.registry = registry
        self.observers = observers
        self.store = store
        self.lifecycle = lifecycle
        self.enforce_device_token = enforce_device_token
        self._handlers: dict[str, MessageHandler] = {
            messages.REGISTER: lifecycle.register,
            messages.ESP_DATA: self._handle_esp_data,
            messages.COMMAND: self._handle_command,
            messages.INTERVAL_CONFIRM: self._handle_interval_confirm,
            messages.ALERT: self._handle_alert,
            messages.PONG: self._handle_pong,
        }

    async def dispatch(self, conn: Connection, raw: str) -> None:
        """Handle one inbound frame. Never raises for bad input."""
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError, RecursionError) as e:
            logger.warning("Unparseable message from %s: %s", conn, e)
            return
        if not isinstance(msg, dict):
            logger.warning("Non-object message from %s: %r", conn, msg)
            return

        msg_type = msg.get("type")
        handler = self._handlers.get(msg_type) if isinstance(msg_type, str) else None
        if handler is None:
            logger.warning("Unknown message type from %s: %r", conn, msg_type)
            return
        await handler(conn, msg)

    # ── Handlers ───────────────────────────────────────────────────

    async def _handle_esp_data(self, conn: Connection, msg: dict) -> None:
        """Persist telemetry, then relay it to the app."""
        sender = self.registry.entry_for(conn)
        lamp_id = msg.get("idLampadaire") or (sender.identity if sender else None)

        if self.enforce_device_token and not _token_matches(sender, lamp_id, msg):
            logger.warning("Rejected esp_data for %s from %s: bad token", lamp_id, conn)
            return

        status = msg.get("state")
        signal = messages.coerce_signal(msg.get("signal"))
        sw420 = msg.get("sw420_state")
        if lamp_id and (status is not None or signal is not None or sw420 is not None):
            try:
                updated = self.store.set_status(
                    str(lamp_id),
                    status=str(status) if status is not None else None,
                    signal=signal,
                    sw420_state=str(sw420) if sw420 is not None else None,
                )
            except Exception:
                logger.exception("esp_data update failed for %s", lamp_id)
                return
            if not updated:
                logger.warning("esp_data for unknown lamp %s", lamp_id)
        else:
            logger.debug("esp_data from %s carries nothing to persist", conn)

        await self.observers.broadcast(msg)
        logger.info("ESP data: lamp %s → %s", lamp_id, status)

    async def _handle_command(self, conn: Connection, msg: dict) -> None:
        """Route a command to one lamp (by identity) or to all of them."""
        command = msg.get("command")
        target = msg.get("idLampadaire")
        logger.info("Command %r → lamp %s", command, target or "ALL")

        if messages.is_broadcast_target(target):
            delivered = await fan_out((e.connection for e in self.registry.entries()), msg)
        else:
            entry = self.registry.find_by_identity(target)
            delivered = 0
            if entry is None:
                logger.warning("Command %r: lamp %r not connected", command, target)
            elif await entry.connection.send(msg):
                delivered = 1

        # Confirmation goes out whether or not a lamp received the command
        await self.observers.broadcast(messages.command_sent(command, target, delivered))

    async def _handle_interval_confirm(self, conn: Connection, msg: dict) -> None:
        await self.observers.broadcast(msg)

    async def _handle_alert(self, conn: Connection, msg: dict) -> None:
        sender = self.registry.entry_for(conn)
        alert = messages.normalize_alert(
            msg,
            lamp_id=sender.identity if sender else None,
            mac=sender.address if sender else None,
        )
        logger.warning(
            "Alert %s from lamp %s: %s", alert["alertType"], alert["idLampadaire"], alert["message"]
        )
        await self.observers.broadcast(alert)

    async def _handle_pong(self, conn: Connection, msg: dict) -> None:
        # last_seen is already refreshed on receive
        pass


def _token_matches(sender, lamp_id, msg: dict) -> bool:
    if sender is None or sender.token is None:
        return False
    return msg.get("token") == sender.token and str(lamp_id) == sender.identity
