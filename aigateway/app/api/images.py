from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import BaseModel, Field

from aigateway.app.auth.identity import CallerIdentity, get_caller
from aigateway.app.services.image_pipeline import ScreenshotUpload, image_pipeline

router = APIRouter(prefix="/ai", tags=["images"])


class ImageRequest(BaseModel):
    prompt: str = Field(min_length=1)
    model: str | None = None
    size: str | None = Field(default=None, description="Provider size string, e.g. 1024x1024")


@router.post("/images")
async def generate_image(req: ImageRequest, caller: CallerIdentity = Depends(get_caller)) -> dict:
    artifact = await image_pipeline.generate_image(req.prompt, caller, model_id=req.model, size=req.size)
    return asdict(artifact)


@router.post("/screenshots")
async def screenshot_to_html(
    file: UploadFile = File(...),
    instructions: str | None = Form(None),
    model: str | None = Form(None),
    caller: CallerIdentity = Depends(get_caller),
) -> dict:
    """Convert an uploaded screenshot into HTML with a vision model."""
    # Read one byte past the cap so oversize uploads are detected without buffering them whole.
    try:
        data = await file.read(image_pipeline.max_upload_bytes + 1)
    finally:
        await file.close()
    result = await image_pipeline.analyze_screenshot(
        ScreenshotUpload(data=data, content_type=file.content_type, filename=file.filename),
        caller,
        instructions=instructions,
        model_id=model,
    )
    return asdict(result)
