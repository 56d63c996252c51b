from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

LOG_FILE = "/tmp/sub-bridge.log"


@dataclass
class Config:
    port: int | None = None
    tunnel_url: str = ""
    verbose: bool = False
    host: str = "127.0.0.1"
    log_file: str = LOG_FILE

    @classmethod
    def from_env(cls) -> Config:
        load_dotenv()
        raw_port = os.environ.get("PORT", "").strip()
        port: int | None = None
        if raw_port:
            try:
                port = int(raw_port)
            except ValueError:
                raise ValueError(f"PORT must be an integer, got {raw_port!r}") from None
            if port <= 0:
                raise ValueError(f"PORT must be positive, got {port}")
        return cls(
            port=port,
            tunnel_url=os.environ.get("TUNNEL_URL", "").strip(),
            verbose=os.environ.get("VERBOSE", "").lower() == "true",
            host=os.environ.get("SUB_BRIDGE_HOST", "127.0.0.1"),
            log_file=os.environ.get("SUB_BRIDGE_LOG_FILE", LOG_FILE),
        )
