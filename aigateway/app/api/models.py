from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from aigateway.app.auth.identity import CallerIdentity, get_caller
from aigateway.app.providers.types import Capability
from aigateway.app.services.model_sync import model_sync

router = APIRouter(prefix="/ai/models", tags=["models"])


class SyncRequest(BaseModel):
    providers: list[str] | None = None


@router.post("/sync")
async def sync_models(body: SyncRequest | None = None, caller: CallerIdentity = Depends(get_caller)) -> dict:
    """Refresh the model cache from providers; per-provider failures are reported, not raised."""
    result = await model_sync.sync(body.providers if body else None)
    return {
        "counts": result.counts,
        "errors": result.errors,
        "providers": result.providers,
        "synced_at": result.synced_at.isoformat(),
    }


@router.get("")
async def list_models(
    capability: Capability | None = Query(None, description="Filter by capability (text, image, vision)"),
    caller: CallerIdentity = Depends(get_caller),
) -> dict:
    models = model_sync.list_models(capability)
    synced_at = model_sync.cache.synced_at
    return {
        "models": [
            {**asdict(m), "capability": m.capability.value, "id": f"{m.provider_id}/{m.model_id}"}
            for m in models
        ],
        "synced_at": synced_at.isoformat() if synced_at else None,
    }
