"""HTTP API for the Android app: lamp listing, installation and edits.

Every mutation is pushed to connected observers over the WebSocket
(``lamp_added`` / ``lamp_updated`` / ``lamp_deleted``).  Store failures are
turned into 500 responses by the handler registered in
:func:`lamphub.server.create_app`.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from lamphub.hub import messages
from lamphub.hub.manager import RelayHub
from lamphub.store import DuplicateAddressError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["lampadaires"])


def get_hub(request: Request) -> RelayHub:
    return request.app.state.hub


def _error(status_code: int, error: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, **extra})


_NOT_FOUND = "Lampadaire non trouvé"


class InstallRequest(BaseModel):
    mac: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    altitude: float | None = None
    lieu_installation: str | None = None
    date_installation: str | None = None


class UpdateRequest(BaseModel):
    latitude: float | None = None
    longitude: float | None = None
    altitude: float | None = None
    lieu_installation: str | None = None
    status: str | None = None


@router.get("/lampadaires")
async def list_lamps(hub: RelayHub = Depends(get_hub)):
    lamps = [hub.with_presence(r) for r in hub.store.list_all()]
    logger.info("GET /api/lampadaires - %d lamps", len(lamps))
    return lamps


@router.get("/lampadaire/{lamp_id}")
async def get_lamp(lamp_id: str, hub: RelayHub = Depends(get_hub)):
    record = hub.store.get(lamp_id)
    if record is None:
        return _error(404, _NOT_FOUND)
    return hub.with_presence(record)


@router.post("/lampadaire/install")
async def install_lamp(req: InstallRequest, hub: RelayHub = Depends(get_hub)):
    if not (req.mac and req.mac.strip()) or req.latitude is None or req.longitude is None:
        return _error(400, "Données manquantes", required=["mac", "latitude", "longitude"])

    try:
        record = hub.store.install(
            req.mac,
            req.latitude,
            req.longitude,
            altitude=req.altitude,
            lieu_installation=req.lieu_installation,
            date_installation=req.date_installation,
        )
    except DuplicateAddressError as e:
        return _error(409, "MAC déjà enregistrée", id=e.existing_id)

    await hub.broadcast(messages.lamp_added(record))
    return {
        "success": True,
        "message": "Lampadaire installé avec succès",
        "id": record["id"],
        "token": record["token"],
    }


@router.put("/lampadaire/{lamp_id}")
async def update_lamp(lamp_id: str, req: UpdateRequest, hub: RelayHub = Depends(get_hub)):
    record = hub.store.update(lamp_id, **req.model_dump())
    if record is None:
        return _error(404, _NOT_FOUND)
    logger.info("Lamp updated: %s", lamp_id)
    await hub.broadcast(messages.lamp_updated(record))
    return {"success": True, "lamp": hub.with_presence(record)}


@router.delete("/lampadaire/{lamp_id}")
async def delete_lamp(lamp_id: str, hub: RelayHub = Depends(get_hub)):
    if not hub.store.delete(lamp_id):
        return _error(404, _NOT_FOUND)
    await hub.broadcast(messages.lamp_deleted(lamp_id))
    return {"success": True, "message": "Lampadaire supprimé"}
