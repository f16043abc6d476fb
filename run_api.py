"""Run the waste compliance AIOps API server."""

import uvicorn

from hazwaste.core.aiops.config import AIOpsSettings

if __name__ == "__main__":
    settings = AIOpsSettings()
    uvicorn.run(
        "hazwaste.api:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.uvicorn_log_level,
    )
