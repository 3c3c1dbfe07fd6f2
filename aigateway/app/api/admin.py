from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from aigateway.app.auth.identity import CallerIdentity, require_admin
from aigateway.app.config.settings import reload_runtime_config
from aigateway.app.providers.registry import registry
from aigateway.app.services.stream_session import session_manager

logger = logging.getLogger("aigateway")

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/config/reload")
async def reload_config(admin: CallerIdentity = Depends(require_admin)) -> dict:
    """Re-read provider keys and default models, then rebuild the registry.

    Running sessions keep the snapshot and transport they started with.
    """
    runtime = reload_runtime_config()
    await registry.reload(runtime)
    logger.info("Runtime config reloaded", extra={"caller_id": admin.caller_id})
    return {
        "providers": [info.provider_id for info in registry.list_providers()],
        "default_models": {
            "text": runtime.default_text_model,
            "image": runtime.default_image_model,
            "vision": runtime.default_vision_model,
        },
        "direct_providers": sorted(runtime.direct_providers),
    }


@router.get("/sessions")
async def list_sessions(
    limit: int = Query(50, ge=1, le=500),
    admin: CallerIdentity = Depends(require_admin),
) -> dict:
    return {
        "active": [s.record() for s in session_manager.active_sessions()],
        "recent": [s.record() for s in session_manager.recent(limit)],
    }
