#!/usr/bin/env python3
"""
Run the gateway under uvicorn from any working directory.

Reload is on only when DEBUG is set.
"""
import sys
from pathlib import Path

repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from aigateway.app.config.settings import settings

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "aigateway.app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        timeout_graceful_shutdown=int(settings.provider_timeout_seconds),
    )
