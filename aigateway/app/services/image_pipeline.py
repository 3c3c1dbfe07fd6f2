"""
Non-streamed image work: text-to-image generation and screenshot-to-HTML.

Both paths share the same order of checks as streamed generation (admission,
then model resolution) and end by handing the result to the asset store with
its provenance.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from aigateway.app.auth.identity import CallerIdentity
from aigateway.app.config.settings import RuntimeConfigStore, runtime_config, settings
from aigateway.app.core.errors import ProviderProtocolError
from aigateway.app.providers.registry import ProviderRegistry, registry
from aigateway.app.providers.types import Capability, ChatCall, ImageCall, ImageResult
from aigateway.app.services.prompt_builder import build_vision_messages, strip_code_fences
from aigateway.app.services.rate_limit import RateLimiter, rate_limiter
from aigateway.app.services.storage import AssetStore, LocalAssetStore
from aigateway.app.services.uploads import detect_image_type, validate_image

logger = logging.getLogger("aigateway")


@dataclass(frozen=True)
class ImageArtifact:
    asset_ref: str
    content_type: str
    model: str
    provider: str


@dataclass(frozen=True)
class ScreenshotResult:
    html: str
    model: str
    provider: str
    asset_ref: str


@dataclass(frozen=True)
class ScreenshotUpload:
    data: bytes
    content_type: str | None
    filename: str | None = None


class ImagePipeline:
    def __init__(
        self,
        registry: ProviderRegistry,
        rate_limiter: RateLimiter,
        store: AssetStore,
        config_store: RuntimeConfigStore,
        max_upload_bytes: int = 5242880,
    ):
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.store = store
        self.config_store = config_store
        self.max_upload_bytes = max_upload_bytes

    async def _image_bytes(self, provider_id: str, result: ImageResult) -> bytes:
        if result.data:
            return result.data
        if result.url:
            data, _ = await self.registry.get(provider_id).transport.fetch_bytes(result.url)
            return data
        raise ProviderProtocolError("Image response carried neither data nor url", provider_id)

    async def generate_image(
        self,
        prompt: str,
        caller: CallerIdentity,
        model_id: str | None = None,
        size: str | None = None,
    ) -> ImageArtifact:
        await self.rate_limiter.check(caller.client_key)
        snapshot = self.config_store.snapshot()
        resolved = self.registry.resolve(Capability.IMAGE, model_id, defaults=snapshot.runtime)

        result = await self.registry.complete(resolved, ImageCall(model=resolved.model_id, prompt=prompt, size=size))
        data = await self._image_bytes(resolved.provider_id, result)

        # Trust the bytes, not the provider's declared type.
        content_type = detect_image_type(data)
        if content_type is None:
            raise ProviderProtocolError("Provider returned data that is not a supported image", resolved.provider_id)

        asset_ref = await asyncio.to_thread(
            self.store.store,
            data,
            content_type,
            {
                "source_prompt": prompt,
                "generated": True,
                "model": resolved.model_id,
                "provider": resolved.provider_id,
                "revised_prompt": result.revised_prompt,
            },
        )
        logger.info(
            "Image generated",
            extra={"provider_id": resolved.provider_id, "model": resolved.model_id, "asset_ref": asset_ref},
        )
        return ImageArtifact(
            asset_ref=asset_ref,
            content_type=content_type,
            model=resolved.model_id,
            provider=resolved.provider_id,
        )

    async def analyze_screenshot(
        self,
        upload: ScreenshotUpload,
        caller: CallerIdentity,
        instructions: str | None = None,
        model_id: str | None = None,
    ) -> ScreenshotResult:
        """Turn a screenshot into HTML. Invalid uploads are rejected before admission or any provider call."""
        image = validate_image(upload.data, upload.content_type, self.max_upload_bytes, upload.filename)

        await self.rate_limiter.check(caller.client_key)
        snapshot = self.config_store.snapshot()
        resolved = self.registry.resolve(Capability.VISION, model_id, defaults=snapshot.runtime)

        messages = build_vision_messages(image.data, image.verified_type, snapshot.css_framework, instructions)
        text = await self.registry.complete(resolved, ChatCall(model=resolved.model_id, messages=messages))
        html = strip_code_fences(text)
        if not html:
            raise ProviderProtocolError("Vision model returned no HTML", resolved.provider_id)

        asset_ref = await asyncio.to_thread(
            self.store.store,
            html.encode("utf-8"),
            "text/html",
            {
                "source_prompt": instructions or "",
                "generated": True,
                "model": resolved.model_id,
                "provider": resolved.provider_id,
                "source": "screenshot",
                "screenshot_type": image.verified_type,
                "screenshot_bytes": image.size,
            },
        )
        logger.info(
            "Screenshot converted",
            extra={"provider_id": resolved.provider_id, "model": resolved.model_id, "asset_ref": asset_ref},
        )
        return ScreenshotResult(html=html, model=resolved.model_id, provider=resolved.provider_id, asset_ref=asset_ref)


# Global instance
image_pipeline = ImagePipeline(
    registry=registry,
    rate_limiter=rate_limiter,
    store=LocalAssetStore(settings.asset_dir),
    config_store=runtime_config,
    max_upload_bytes=settings.max_upload_bytes,
)
