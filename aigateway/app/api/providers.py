from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends

from aigateway.app.auth.identity import CallerIdentity, get_caller
from aigateway.app.providers.registry import registry

router = APIRouter(prefix="/providers", tags=["providers"])


@router.get("")
async def list_providers(caller: CallerIdentity = Depends(get_caller)) -> list[dict]:
    return [asdict(info) for info in registry.list_providers()]


@router.get("/{provider_id}/models")
async def list_provider_models(provider_id: str, caller: CallerIdentity = Depends(get_caller)) -> dict:
    entry = registry.get(provider_id)
    models = registry.cache.provider_models(entry.spec.provider_id)
    return {"models": [{"id": m.model_id, "label": m.display_name, "capability": m.capability.value} for m in models]}
