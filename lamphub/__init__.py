"""Lamphub: relay hub for streetlight controllers.

Bridges ESP32 streetlight controllers and the Android supervision app over
WebSocket, backed by a SQLite device registry.

Quickstart::

    python -m lamphub.server
    # or
    uvicorn lamphub.server:app --host 0.0.0.0 --port 10000
"""

__version__ = "1.0.0"
