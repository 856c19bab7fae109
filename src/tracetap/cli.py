import uvicorn

from tracetap import diagnostics
from tracetap.config import CollectorConfig


def main():
    config = CollectorConfig.from_env()
    diagnostics.configure_logging(config.log_level)
    diagnostics.log(diagnostics.LEVEL_INFO, "CORE",
                    f"Launching collector on http://{config.host}:{config.port} (ingest: /ingest, live: /ws)")

    uvicorn.run(
        "tracetap.collector_app:create_app",
        factory=True,
        host=config.host,
        port=config.port,
        reload=config.reload,
        log_level=config.log_level,
    )
