"""Tests for inbound dispatch and command / telemetry routing."""

from __future__ import annotations

import json
import logging
from unittest.mock import AsyncMock, patch

import pytest

from lamphub.config import RelaySettings
from lamphub.hub.connections import ConnectionState
from lamphub.hub.manager import RelayHub
from lamphub.hub.messages import coerce_signal
from lamphub.store import STATUS_OFFLINE, DeviceStoreError


# ── Helpers ───────────────────────────────────────────────────────


def _observer(hub, make_conn):
    conn = make_conn()
    conn.state = ConnectionState.REGISTERED_OBSERVER
    hub.observers.add(conn)
    return conn


def _device(hub, make_conn, mac: str, lamp_id: str, token: str = "tok"):
    conn = make_conn()
    conn.state = ConnectionState.REGISTERED_DEVICE
    hub.registry.register(mac, lamp_id, token, conn)
    return conn


async def _send(hub, conn, msg) -> None:
    raw = msg if isinstance(msg, str) else json.dumps(msg)
    await hub.router.dispatch(conn, raw)


# ── Malformed input ───────────────────────────────────────────────


class TestMalformed:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [
        "not json",
        "{\"type\": ",
        "[1, 2, 3]",
        "42",
        "{\"no_type\": true}",
        "{\"type\": 7}",
        "{\"type\": \"launch_missiles\"}",
    ])
    async def test_bad_frames_are_ignored(self, hub, make_conn, raw):
        observer = _observer(hub, make_conn)
        sender = make_conn()

        await _send(hub, sender, raw)

        assert sender.websocket.sent == []
        assert observer.websocket.sent == []
        assert not sender.websocket.closed

    @pytest.mark.asyncio
    async def test_deeply_nested_frame_is_ignored(self, hub, make_conn):
        observer = _observer(hub, make_conn)
        sender = make_conn()

        await _send(hub, sender, "[" * 200000 + "]" * 200000)

        assert sender.websocket.sent == []
        assert observer.websocket.sent == []

    @pytest.mark.asyncio
    async def test_connection_usable_after_bad_frame(self, hub, make_conn):
        sender = make_conn()
        await _send(hub, sender, "garbage")
        await _send(hub, sender, {"type": "register", "clientType": "android"})
        assert sender in hub.observers


# ── Telemetry ─────────────────────────────────────────────────────


class TestEspData:
    @pytest.mark.asyncio
    async def test_persists_then_relays(self, hub, make_conn, lamp):
        observer = _observer(hub, make_conn)
        device = _device(hub, make_conn, lamp["mac"], lamp["id"])
        msg = {
            "type": "esp_data", "idLampadaire": lamp["id"],
            "state": "ON", "signal": -52, "sw420_state": "ACTIVE",
        }

        await _send(hub, device, msg)

        row = hub.store.get(lamp["id"])
        assert row["status"] == "ON"
        assert row["signal"] == -52
        assert row["sw420_state"] == "ACTIVE"
        assert observer.websocket.sent == [msg]

    @pytest.mark.asyncio
    async def test_defaults_to_sender_identity(self, hub, make_conn, lamp):
        device = _device(hub, make_conn, lamp["mac"], lamp["id"])
        await _send(hub, device, {"type": "esp_data", "state": "ALERT"})
        assert hub.store.get(lamp["id"])["status"] == "ALERT"

    @pytest.mark.asyncio
    async def test_integral_float_signal_is_stored(self, hub, make_conn, lamp):
        device = _device(hub, make_conn, lamp["mac"], lamp["id"])
        await _send(hub, device, {"type": "esp_data", "signal": -52.0})
        assert hub.store.get(lamp["id"])["signal"] == -52

    @pytest.mark.asyncio
    @pytest.mark.parametrize("signal", [True, -52.5, "-52"])
    async def test_bad_signal_dropped_but_relayed(self, hub, make_conn, lamp, signal, caplog):
        observer = _observer(hub, make_conn)
        device = _device(hub, make_conn, lamp["mac"], lamp["id"])
        hub.store.set_status(lamp["id"], signal=-70)

        with caplog.at_level(logging.WARNING, logger="lamphub.hub.messages"):
            await _send(hub, device, {"type": "esp_data", "state": "ON", "signal": signal})

        row = hub.store.get(lamp["id"])
        assert row["signal"] == -70
        assert row["status"] == "ON"
        assert len(observer.websocket.of_type("esp_data")) == 1
        assert "signal" in caplog.text

    @pytest.mark.asyncio
    async def test_store_failure_suppresses_relay(self, hub, make_conn, lamp):
        observer = _observer(hub, make_conn)
        device = _device(hub, make_conn, lamp["mac"], lamp["id"])

        with patch.object(hub.store, "set_status", side_effect=DeviceStoreError("locked")):
            await _send(hub, device, {"type": "esp_data", "idLampadaire": lamp["id"], "state": "ON"})

        assert observer.websocket.sent == []

    @pytest.mark.asyncio
    async def test_unknown_lamp_still_relayed(self, hub, make_conn):
        observer = _observer(hub, make_conn)
        await _send(hub, make_conn(), {"type": "esp_data", "idLampadaire": "LAMP9999", "state": "ON"})
        assert len(observer.websocket.of_type("esp_data")) == 1

    @pytest.mark.asyncio
    async def test_token_gate(self, store, make_conn, lamp):
        hub = RelayHub(store=store, settings=RelaySettings(enforce_device_token=True))
        observer = _observer(hub, make_conn)
        device = _device(hub, make_conn, lamp["mac"], lamp["id"], token=lamp["token"])

        await _send(hub, device, {"type": "esp_data", "idLampadaire": lamp["id"],
                                  "state": "ON", "token": "wrong"})
        assert hub.store.get(lamp["id"])["status"] == "OFF"
        assert observer.websocket.sent == []

        await _send(hub, device, {"type": "esp_data", "idLampadaire": lamp["id"],
                                  "state": "ON", "token": lamp["token"]})
        assert hub.store.get(lamp["id"])["status"] == "ON"
        assert len(observer.websocket.sent) == 1

    @pytest.mark.asyncio
    async def test_token_gate_rejects_unregistered_sender(self, store, make_conn, lamp):
        hub = RelayHub(store=store, settings=RelaySettings(enforce_device_token=True))
        await _send(hub, make_conn(), {"type": "esp_data", "idLampadaire": lamp["id"],
                                       "state": "ON", "token": lamp["token"]})
        assert hub.store.get(lamp["id"])["status"] == "OFF"


# ── Commands ──────────────────────────────────────────────────────


class TestCommand:
    @pytest.mark.asyncio
    async def test_directed_command_delivered_once(self, hub, make_conn):
        observer = _observer(hub, make_conn)
        target = _device(hub, make_conn, "AA:00:00:00:00:01", "LAMP0001")
        other = _device(hub, make_conn, "AA:00:00:00:00:02", "LAMP0002")
        cmd = {"type": "command", "command": "ON", "idLampadaire": "LAMP0001"}

        await _send(hub, observer, cmd)

        assert target.websocket.sent == [cmd]
        assert other.websocket.sent == []
        assert observer.websocket.of_type("command_sent") == [{
            "type": "command_sent", "command": "ON", "lampId": "LAMP0001", "delivered": 1,
        }]

    @pytest.mark.asyncio
    async def test_directed_command_to_absent_lamp(self, hub, make_conn):
        observer = _observer(hub, make_conn)
        other = _device(hub, make_conn, "AA:00:00:00:00:02", "LAMP0002")

        await _send(hub, observer, {"type": "command", "command": "OFF", "idLampadaire": "LAMP0001"})

        assert other.websocket.sent == []
        [confirm] = observer.websocket.of_type("command_sent")
        assert confirm["delivered"] == 0

    @pytest.mark.asyncio
    async def test_numeric_identity_never_matches(self, hub, make_conn):
        observer = _observer(hub, make_conn)
        device = _device(hub, make_conn, "AA:00:00:00:00:01", "12")

        await _send(hub, observer, {"type": "command", "command": "ON", "idLampadaire": 12})

        assert device.websocket.sent == []
        assert len(observer.websocket.of_type("command_sent")) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [0, 1, 5])
    async def test_undirected_command_reaches_every_device(self, hub, make_conn, count):
        observer = _observer(hub, make_conn)
        devices = [
            _device(hub, make_conn, f"AA:00:00:00:00:{i:02d}", f"LAMP{i:04d}")
            for i in range(count)
        ]
        cmd = {"type": "command", "command": "OFF"}

        await _send(hub, observer, cmd)

        for d in devices:
            assert d.websocket.sent == [cmd]
        [confirm] = observer.websocket.of_type("command_sent")
        assert confirm["delivered"] == count
        assert confirm["lampId"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sentinel", ["", "ALL", "all", "TOUS"])
    async def test_sentinel_targets_mean_all(self, hub, make_conn, sentinel):
        a = _device(hub, make_conn, "AA:00:00:00:00:01", "LAMP0001")
        b = _device(hub, make_conn, "AA:00:00:00:00:02", "LAMP0002")
        await _send(hub, make_conn(), {"type": "command", "command": "ON", "idLampadaire": sentinel})
        assert len(a.websocket.sent) == 1
        assert len(b.websocket.sent) == 1

    @pytest.mark.asyncio
    async def test_undirected_command_skips_closed_devices(self, hub, make_conn):
        live = _device(hub, make_conn, "AA:00:00:00:00:01", "LAMP0001")
        dead = _device(hub, make_conn, "AA:00:00:00:00:02", "LAMP0002")
        dead.websocket.drop()

        await _send(hub, make_conn(), {"type": "command", "command": "ON"})

        assert len(live.websocket.sent) == 1
        assert dead.websocket.sent == []


# ── Pass-through / alerts ─────────────────────────────────────────


class TestPassThrough:
    @pytest.mark.asyncio
    async def test_interval_confirm_relayed_unmodified(self, hub, make_conn):
        observer = _observer(hub, make_conn)
        msg = {"type": "interval_confirm", "idLampadaire": "LAMP0001", "interval": 5000}
        await _send(hub, make_conn(), msg)
        assert observer.websocket.sent == [msg]

    @pytest.mark.asyncio
    async def test_alert_defaults(self, hub, make_conn, lamp):
        observer = _observer(hub, make_conn)
        device = _device(hub, make_conn, lamp["mac"], lamp["id"])

        await _send(hub, device, {"type": "alert"})

        [alert] = observer.websocket.of_type("alert")
        assert alert["idLampadaire"] == lamp["id"]
        assert alert["mac"] == lamp["mac"]
        assert alert["alertType"] == "UNKNOWN"
        assert alert["message"] == ""
        assert alert["severity"] == "warning"
        assert alert["timestamp"]

    @pytest.mark.asyncio
    async def test_alert_keeps_given_fields(self, hub, make_conn):
        observer = _observer(hub, make_conn)
        msg = {
            "type": "alert", "idLampadaire": "LAMP0042", "alertType": "SW420",
            "message": "Vibration détectée", "severity": "critical",
            "timestamp": "2026-10-19T10:00:00+00:00", "extra": 1,
        }
        await _send(hub, make_conn(), msg)
        [alert] = observer.websocket.of_type("alert")
        assert {k: alert[k] for k in msg} == msg

    @pytest.mark.asyncio
    async def test_pong_is_silent(self, hub, make_conn):
        observer = _observer(hub, make_conn)
        sender = make_conn()
        await _send(hub, sender, {"type": "pong"})
        assert observer.websocket.sent == []
        assert sender.websocket.sent == []


@pytest.mark.parametrize("raw, expected", [
    (None, None),
    (-61, -61),
    (-61.0, -61),
    (-61.5, None),
    (True, None),
    (False, None),
    ("-61", None),
])
def test_coerce_signal(raw, expected):
    assert coerce_signal(raw) == expected


# ── Serve loop ────────────────────────────────────────────────────


class TestServe:
    @pytest.mark.asyncio
    async def test_nested_frame_does_not_drop_device(self, hub, make_conn, lamp):
        observer = _observer(hub, make_conn)
        device = make_conn([
            json.dumps({"type": "register", "clientType": "esp32", "mac": lamp["mac"]}),
            "[" * 200000 + "]" * 200000,
            json.dumps({"type": "esp_data", "state": "ON"}),
        ])

        await hub.serve(device)

        events = [m["type"] for m in observer.websocket.sent]
        assert events == ["lamp_connected", "esp_data", "lamp_disconnected"]
        assert observer.websocket.of_type("esp_data")[0]["state"] == "ON"

    @pytest.mark.asyncio
    async def test_handler_failure_keeps_serving(self, hub, make_conn, lamp):
        observer = _observer(hub, make_conn)
        device = make_conn([
            json.dumps({"type": "register", "clientType": "esp32", "mac": lamp["mac"]}),
            json.dumps({"type": "command", "command": "ON"}),
            json.dumps({"type": "esp_data", "state": "ON"}),
        ])
        failing = AsyncMock(side_effect=RuntimeError("boom"))

        with patch.dict(hub.router._handlers, {"command": failing}):
            await hub.serve(device)

        failing.assert_awaited_once()
        assert len(observer.websocket.of_type("esp_data")) == 1
        # Disconnect cleanup still ran once the socket closed
        assert not hub.registry.is_live(lamp["mac"])
        assert hub.store.get(lamp["id"])["status"] == STATUS_OFFLINE
        assert len(observer.websocket.of_type("lamp_disconnected")) == 1

    @pytest.mark.asyncio
    async def test_receive_failure_runs_cleanup(self, hub, make_conn, lamp):
        observer = _observer(hub, make_conn)
        device = make_conn()
        await hub.lifecycle.register(device, {"type": "register", "clientType": "esp32", "mac": lamp["mac"]})

        with patch.object(device, "receive_text", AsyncMock(side_effect=RuntimeError("socket gone"))):
            await hub.serve(device)

        assert device.state is ConnectionState.CLOSED
        assert not hub.registry.is_live(lamp["mac"])
        assert len(observer.websocket.of_type("lamp_disconnected")) == 1
