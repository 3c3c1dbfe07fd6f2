from fastapi import APIRouter

from aigateway.app.providers.registry import registry
from aigateway.app.services.stream_session import session_manager

router = APIRouter()


@router.get("/health")
def health():
    """Constant-time liveness check; never calls a provider."""
    return {
        "status": "healthy",
        "providers": len(registry.providers()),
        "active_sessions": len(session_manager.active_sessions()),
    }


@router.get("/version")
async def version():
    return {"version": "0.1.0"}
