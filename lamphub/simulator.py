"""Streetlight controller simulator.

Speaks the device side of the hub protocol so the relay can be exercised
without hardware:
  Device → Hub: register, esp_data, interval_confirm, pong
  Hub → Device: welcome, error, ping, command

Run with::

    python -m lamphub.simulator --url ws://localhost:10000/ws --mac AA:BB:CC:DD:EE:FF
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Optional

import websockets
from websockets.asyncio.client import ClientConnection

logger = logging.getLogger(__name__)


class SimulatorError(Exception):
    """Raised when the hub refuses the handshake."""


class StreetlightSimulator:
    """A fake ESP32 lamp controller."""

    def __init__(
        self,
        server_url: str,
        mac: str,
        signal: int = -60,
        interval_ms: int = 30000,
    ) -> None:
        self.server_url = server_url
        self.mac = mac
        self.signal = signal
        self.interval_ms = interval_ms
        self.state = "OFF"
        self.sw420_state = "INACTIVE"

        self.lamp_id: Optional[str] = None
        self.token: Optional[str] = None
        self._ws: Optional[ClientConnection] = None

    async def connect(self) -> dict:
        """Open the socket and register; returns the ``welcome`` payload."""
        self._ws = await websockets.connect(self.server_url, close_timeout=5)
        await self._send({
            "type": "register",
            "clientType": "esp32",
            "mac": self.mac,
            "signal": self.signal,
        })

        raw = await asyncio.wait_for(self._ws.recv(), timeout=10)
        response = json.loads(raw)
        if response.get("type") != "welcome":
            await self.disconnect()
            raise SimulatorError(response.get("message") or f"Unexpected reply: {response}")

        self.lamp_id = response.get("lampId")
        self.token = response.get("token")
        logger.info(
            "Registered as %s at %s (%s, %s)",
            self.lamp_id, response.get("lieu_installation"),
            response.get("latitude"), response.get("longitude"),
        )
        return response

    async def _send(self, message: dict) -> None:
        if self._ws:
            await self._ws.send(json.dumps(message))

    async def send_telemetry(
        self,
        state: str | None = None,
        signal: int | None = None,
        sw420_state: str | None = None,
    ) -> None:
        if state is not None:
            self.state = state
        if signal is not None:
            self.signal = signal
        if sw420_state is not None:
            self.sw420_state = sw420_state
        await self._send({
            "type": "esp_data",
            "idLampadaire": self.lamp_id,
            "token": self.token,
            "state": self.state,
            "signal": self.signal,
            "sw420_state": self.sw420_state,
        })

    async def handle_message(self, msg: dict) -> None:
        msg_type = msg.get("type")
        if msg_type == "ping":
            await self._send({"type": "pong", "idLampadaire": self.lamp_id})
        elif msg_type == "command":
            await self._apply_command(msg)
        else:
            logger.debug("Unhandled message type: %s", msg_type)

    async def _apply_command(self, msg: dict) -> None:
        command = str(msg.get("command", "")).upper()
        if command in ("ON", "OFF"):
            await self.send_telemetry(state=command)
        elif command == "SET_INTERVAL":
            try:
                self.interval_ms = int(msg.get("interval", self.interval_ms))
            except (TypeError, ValueError):
                logger.warning("Bad interval in command: %r", msg.get("interval"))
                return
            await self._send({
                "type": "interval_confirm",
                "idLampadaire": self.lamp_id,
                "interval": self.interval_ms,
            })
        else:
            logger.warning("Unknown command: %s", command)

    async def listen(self) -> None:
        """Handle hub messages until the connection closes."""
        if not self._ws:
            return
        try:
            async for raw in self._ws:
                try:
                    await self.handle_message(json.loads(raw))
                except ValueError:
                    logger.warning("Unparseable message from hub: %r", raw)
        except websockets.ConnectionClosed:
            logger.info("Hub connection closed")

    async def telemetry_loop(self) -> None:
        while self._ws:
            await self.send_telemetry()
            await asyncio.sleep(self.interval_ms / 1000)

    async def disconnect(self) -> None:
        if self._ws:
            await self._ws.close()
            self._ws = None


async def _run(args: argparse.Namespace) -> None:
    sim = StreetlightSimulator(args.url, args.mac, signal=args.signal, interval_ms=args.interval)
    await sim.connect()
    telemetry = asyncio.create_task(sim.telemetry_loop())
    try:
        await sim.listen()
    finally:
        telemetry.cancel()
        await sim.disconnect()


def main() -> None:
    parser = argparse.ArgumentParser(description="Simulate a streetlight controller")
    parser.add_argument("--url", default="ws://localhost:10000/ws")
    parser.add_argument("--mac", required=True)
    parser.add_argument("--signal", type=int, default=-60)
    parser.add_argument("--interval", type=int, default=30000, help="telemetry period (ms)")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)
    try:
        asyncio.run(_run(args))
    except SimulatorError as e:
        logger.error("Registration refused: %s", e)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
