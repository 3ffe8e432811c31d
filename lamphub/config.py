"""Runtime configuration for the relay hub, read from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class RelaySettings:
    """Hub settings; see :meth:`from_env` for the variables consulted."""

    data_dir: Path = Path("./data")
    db_path: Path | None = None
    host: str = "0.0.0.0"
    port: int = 10000
    ping_interval: float = 30.0  # seconds
    enforce_device_token: bool = False
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    @property
    def database(self) -> Path:
        return self.db_path or self.data_dir / "lamphub.db"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> RelaySettings:
        env = os.environ if environ is None else environ
        db_path = env.get("RELAY_DB_PATH")
        origins = [o.strip() for o in env.get("RELAY_CORS_ORIGINS", "*").split(",") if o.strip()]
        return cls(
            data_dir=Path(env.get("RELAY_DATA_DIR", "./data")),
            db_path=Path(db_path) if db_path else None,
            host=env.get("RELAY_HOST", "0.0.0.0"),
            # Render injects PORT; RELAY_PORT is the local override
            port=int(env.get("PORT") or env.get("RELAY_PORT") or "10000"),
            ping_interval=int(env.get("PING_INTERVAL_MS", "30000")) / 1000.0,
            enforce_device_token=env.get("RELAY_ENFORCE_DEVICE_TOKEN", "0").lower() in _TRUTHY,
            cors_origins=origins or ["*"],
            log_level=env.get("RELAY_LOG_LEVEL", "INFO").upper(),
        )
