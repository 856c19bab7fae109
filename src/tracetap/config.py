from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class CollectorConfig:
    host: str = "127.0.0.1"
    port: int = 8090
    max_per_service: int = 1000   # retention window per service
    viewer_queue: int = 5000      # per-viewer delivery queue bound
    http_service: str = "HTTP"    # default Service for /ingest payloads
    ws_service: str = "WS"        # default Service for /ws payloads
    reload: bool = False
    log_level: str = "info"

    @classmethod
    def from_env(cls) -> "CollectorConfig":
        return cls(
            host=os.getenv("OBS_HOST", "127.0.0.1"),
            port=int(os.getenv("OBS_PORT", "8090")),
            max_per_service=int(os.getenv("OBS_MAX_PER_SERVICE", "1000")),
            viewer_queue=int(os.getenv("OBS_VIEWER_QUEUE", "5000")),
            http_service=os.getenv("OBS_HTTP_SERVICE", "HTTP"),
            ws_service=os.getenv("OBS_WS_SERVICE", "WS"),
            reload=os.getenv("OBS_RELOAD", "0") == "1",
            log_level=os.getenv("OBS_LOG_LEVEL", "info"),
        )
