"""WebSocket endpoint shared by streetlight controllers and the Android app.

Mount it in FastAPI via::

    app.add_api_websocket_route("/ws", relay_ws_handler)

The first meaningful frame is a ``register`` message declaring the client
type; see :mod:`lamphub.hub.lifecycle` for the handshake.
"""

from __future__ import annotations

import logging

from fastapi import WebSocket

from lamphub.hub.connections import Connection
from lamphub.hub.manager import RelayHub

logger = logging.getLogger(__name__)


async def relay_ws_handler(websocket: WebSocket) -> None:
    hub: RelayHub = websocket.app.state.hub
    await websocket.accept()
    conn = Connection(websocket)
    logger.info("New WebSocket connection: %s", conn.remote)
    await hub.serve(conn)
