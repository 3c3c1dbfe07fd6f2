from __future__ import annotations

import logging
from dataclasses import asdict
from typing import AsyncGenerator, Literal

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from aigateway.app.auth.identity import CallerIdentity, get_caller
from aigateway.app.core.errors import SessionNotFound
from aigateway.app.services.mode_router import DirectGrant
from aigateway.app.services.stream_session import GenerationRequest, SessionHandle, session_manager

logger = logging.getLogger("aigateway")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Content-Type": "text/event-stream",
    "X-Accel-Buffering": "no",
}


class GenerateRequest(BaseModel):
    prompt: str = Field(min_length=1)
    mode: Literal["page", "element"] = "page"
    existing_html: str | None = None
    instructions: str | None = None
    model: str | None = None
    framework: Literal["tailwind", "bootstrap", "none"] | None = None
    connection: Literal["server", "direct"] | None = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "prompt": "A pricing section with three tiers",
                    "mode": "page",
                    "model": "openai/gpt-4o-mini",
                }
            ]
        }
    }


async def _relay(handle: SessionHandle) -> AsyncGenerator[str, None]:
    try:
        async for event in handle.events():
            yield event.sse()
    finally:
        # Client went away before the terminal event: stop the provider stream too.
        if not handle.session.terminal:
            logger.info("Client disconnected, cancelling session", extra={"session_id": handle.session_id})
            handle.cancel()


router = APIRouter(prefix="/ai", tags=["generation"])


@router.post("/generate")
async def generate(req: GenerateRequest, caller: CallerIdentity = Depends(get_caller)):
    """Stream generated HTML as SSE, or return direct connection parameters."""
    result = await session_manager.start(
        GenerationRequest(
            prompt=req.prompt,
            mode=req.mode,
            existing_html=req.existing_html,
            instructions=req.instructions,
            model_id=req.model,
            framework=req.framework,
            connection=req.connection,
        ),
        caller,
    )
    if isinstance(result, DirectGrant):
        return {"connection": "direct", **asdict(result)}
    return StreamingResponse(_relay(result), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/sessions/{session_id}/cancel")
async def cancel_session(session_id: str, caller: CallerIdentity = Depends(get_caller)) -> dict:
    session = await session_manager.cancel(session_id, caller)
    return session.record()


@router.get("/sessions/{session_id}")
async def session_status(session_id: str, caller: CallerIdentity = Depends(get_caller)) -> dict:
    session = session_manager.get(session_id)
    if session.caller.caller_id != caller.caller_id and not caller.is_admin:
        # Same answer as a missing session
        raise SessionNotFound(session_id)
    return session.record()
