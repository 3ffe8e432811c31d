"""Lamphub: relay server.

Exposes:
  WS   /ws                            device + Android app channel
  GET  /api/lampadaires               list lamps
  GET  /api/lampadaire/{id}           one lamp
  POST /api/lampadaire/install        install a lamp (returns id + token)
  PUT  /api/lampadaire/{id}           edit a lamp
  DELETE /api/lampadaire/{id}         remove a lamp
  GET  /health                        liveness check

Start with::

    python -m lamphub.server
    # or
    uvicorn lamphub.server:app --host 0.0.0.0 --port 10000
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lamphub import __version__
from lamphub.api import router as api_router
from lamphub.config import RelaySettings
from lamphub.db import init_db, set_db_path
from lamphub.hub.manager import RelayHub
from lamphub.hub.websocket import relay_ws_handler
from lamphub.store import DeviceStore, DeviceStoreError

logger = logging.getLogger(__name__)

_STARTED = time.monotonic()


def _log_unhandled(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    """Loop exception handler: log and keep serving."""
    exc = context.get("exception")
    logger.error(
        "Unhandled error in event loop: %s", context.get("message", "?"),
        exc_info=(type(exc), exc, exc.__traceback__) if exc else None,
    )


def create_app(
    settings: RelaySettings | None = None,
    store: DeviceStore | None = None,
) -> FastAPI:
    """Build the FastAPI app; ``store`` defaults to the SQLite store."""
    settings = settings or RelaySettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        asyncio.get_running_loop().set_exception_handler(_log_unhandled)
        if store is None:
            settings.database.parent.mkdir(parents=True, exist_ok=True)
            set_db_path(settings.database)
            init_db()
        app.state.hub.reset_statuses()
        logger.info("Relay hub ready (ping every %.0fs)", settings.ping_interval)
        yield
        logger.info("Relay hub stopping")

    app = FastAPI(title="Lamphub", version=__version__, lifespan=lifespan)
    app.state.hub = RelayHub(store=store, settings=settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DeviceStoreError)
    async def _store_error(request: Request, exc: DeviceStoreError):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=500, content={"error": "Erreur serveur", "details": str(exc)}
        )

    @app.get("/health")
    async def health():
        hub: RelayHub = app.state.hub
        return {
            "status": "OK",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": time.monotonic() - _STARTED,
            "devices_connected": len(hub.registry),
            "observers_connected": len(hub.observers),
        }

    app.include_router(api_router)
    app.add_api_websocket_route("/ws", relay_ws_handler)
    return app


app = create_app()


# ──────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────

def main():
    import uvicorn
    settings = RelaySettings.from_env()
    logging.basicConfig(level=settings.log_level)
    logger.info("Starting relay hub on %s:%d", settings.host, settings.port)
    uvicorn.run("lamphub.server:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    main()
