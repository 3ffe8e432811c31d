"""Wire message types and builders.

Inbound (device / app → hub):
    register, esp_data, command, interval_confirm, alert, pong

Outbound (hub → device / app):
    welcome, error, ping, lamp_added, lamp_updated, lamp_deleted,
    lamp_connected, lamp_disconnected, command_sent
    (plus esp_data, interval_confirm and alert relayed to the app)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from lamphub.store import STATUS_CONNECTED, STATUS_OFFLINE

logger = logging.getLogger(__name__)

# Inbound
REGISTER = "register"
ESP_DATA = "esp_data"
COMMAND = "command"
INTERVAL_CONFIRM = "interval_confirm"
ALERT = "alert"
PONG = "pong"

# Outbound
WELCOME = "welcome"
ERROR = "error"
PING = "ping"
LAMP_ADDED = "lamp_added"
LAMP_UPDATED = "lamp_updated"
LAMP_DELETED = "lamp_deleted"
LAMP_CONNECTED = "lamp_connected"
LAMP_DISCONNECTED = "lamp_disconnected"
COMMAND_SENT = "command_sent"

CLIENT_DEVICE = "esp32"
CLIENT_OBSERVER = "android"

# Target values of ``idLampadaire`` meaning "every lamp"
BROADCAST_TARGETS = {"", "ALL", "TOUS"}


def is_broadcast_target(target: Any) -> bool:
    if target is None:
        return True
    return isinstance(target, str) and target.strip().upper() in BROADCAST_TARGETS


def coerce_signal(value: Any) -> int | None:
    """RSSI as an int; integral floats are accepted, anything else dropped."""
    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    logger.warning("Dropping non-integer signal value: %r", value)
    return None


def ping() -> dict:
    return {"type": PING}


def error(message: str) -> dict:
    return {"type": ERROR, "message": message}


def observer_welcome() -> dict:
    return {"type": WELCOME, "message": "Android connecté"}


def device_welcome(record: dict) -> dict:
    """Welcome for a device, carrying its install metadata."""
    return {
        "type": WELCOME,
        "lampId": record["id"],
        "token": record["token"],
        "status": STATUS_CONNECTED,
        "latitude": record.get("latitude"),
        "longitude": record.get("longitude"),
        "altitude": record.get("altitude"),
        "lieu_installation": record.get("lieu_installation"),
    }


def lamp_connected(lamp_id: str, mac: str) -> dict:
    return {"type": LAMP_CONNECTED, "lampId": lamp_id, "mac": mac, "status": STATUS_CONNECTED}


def lamp_disconnected(lamp_id: str, mac: str) -> dict:
    return {"type": LAMP_DISCONNECTED, "lampId": lamp_id, "mac": mac, "status": STATUS_OFFLINE}


def lamp_added(record: dict) -> dict:
    lamp = {k: v for k, v in record.items() if k != "token"}
    return {"type": LAMP_ADDED, "lamp": lamp}


def lamp_updated(record: dict) -> dict:
    lamp = {k: v for k, v in record.items() if k != "token"}
    return {"type": LAMP_UPDATED, "lamp": lamp}


def lamp_deleted(lamp_id: str) -> dict:
    return {"type": LAMP_DELETED, "lampId": lamp_id}


def command_sent(command: Any, lamp_id: Any, delivered: int) -> dict:
    return {
        "type": COMMAND_SENT,
        "command": command,
        "lampId": lamp_id,
        "delivered": delivered,
    }


def normalize_alert(msg: dict, lamp_id: str | None = None, mac: str | None = None) -> dict:
    """Fill in defaults for the optional alert fields."""
    return {
        **msg,
        "type": ALERT,
        "idLampadaire": msg.get("idLampadaire") or lamp_id,
        "mac": msg.get("mac") or mac,
        "alertType": msg.get("alertType") or "UNKNOWN",
        "message": msg.get("message") or "",
        "severity": msg.get("severity") or "warning",
        "timestamp": msg.get("timestamp") or datetime.now(timezone.utc).isoformat(),
    }
