import threading

import pytest

from aigateway.app.core.errors import ProviderProtocolError, ValidationError
from aigateway.app.providers.types import ImageResult
from aigateway.app.services.image_pipeline import ImagePipeline, ScreenshotUpload
from aigateway.app.services.rate_limit import RateLimiter
from aigateway.tests.fakes import (
    JPEG_BYTES,
    PNG_BYTES,
    FakeStore,
    FakeTransport,
    make_config_store,
    make_registry,
    make_spec,
)


def build_pipeline(transport, store=None, max_upload_bytes=1024):
    limiter = RateLimiter(limit=10, window_seconds=60)
    pipeline = ImagePipeline(
        registry=make_registry((make_spec("fake"), transport)),
        rate_limiter=limiter,
        store=store or FakeStore(),
        config_store=make_config_store(),
        max_upload_bytes=max_upload_bytes,
    )
    return pipeline, limiter


@pytest.mark.asyncio
async def test_invalid_upload_is_rejected_before_provider_or_admission(caller):
    transport = FakeTransport()
    pipeline, limiter = build_pipeline(transport)

    with pytest.raises(ValidationError) as exc_info:
        await pipeline.analyze_screenshot(ScreenshotUpload(JPEG_BYTES, "image/png"), caller, model_id="fake/vision")

    assert exc_info.value.reason == "type_mismatch"
    assert transport.once_calls == []
    assert limiter._buckets == {}


@pytest.mark.asyncio
async def test_oversized_upload_is_rejected(caller):
    transport = FakeTransport()
    pipeline, _ = build_pipeline(transport, max_upload_bytes=10)

    with pytest.raises(ValidationError) as exc_info:
        await pipeline.analyze_screenshot(ScreenshotUpload(PNG_BYTES, "image/png"), caller)

    assert exc_info.value.reason == "too_large"
    assert transport.once_calls == []


@pytest.mark.asyncio
async def test_screenshot_becomes_stored_html(caller):
    transport = FakeTransport(reply="```html\n<main><h1>Pricing</h1></main>\n```")
    store = FakeStore()
    pipeline, _ = build_pipeline(transport, store=store)

    result = await pipeline.analyze_screenshot(
        ScreenshotUpload(PNG_BYTES, "image/png", "pricing.png"),
        caller,
        instructions="Use a dark theme",
        model_id="fake/gpt-4o",
    )

    assert result.html == "<main><h1>Pricing</h1></main>"
    assert result.model == "gpt-4o"
    assert result.provider == "fake"
    assert result.asset_ref == "asset-1"

    call = transport.once_calls[0]
    image_part, text_part = call.messages[1]["content"]
    assert image_part["image_url"]["url"].startswith("data:image/png;base64,")
    assert "Use a dark theme" in text_part["text"]

    data, content_type, metadata = store.items[0]
    assert data == b"<main><h1>Pricing</h1></main>"
    assert content_type == "text/html"
    assert metadata["source"] == "screenshot"
    assert metadata["source_prompt"] == "Use a dark theme"
    assert metadata["generated"] is True


@pytest.mark.asyncio
async def test_empty_vision_reply_is_protocol_error(caller):
    pipeline, _ = build_pipeline(FakeTransport(reply="```html\n```"))

    with pytest.raises(ProviderProtocolError):
        await pipeline.analyze_screenshot(ScreenshotUpload(PNG_BYTES, "image/png"), caller, model_id="fake/v")


@pytest.mark.asyncio
async def test_generate_image_stores_provider_bytes(caller):
    transport = FakeTransport(image=ImageResult(data=PNG_BYTES, revised_prompt="a tabby cat"))
    store = FakeStore()
    pipeline, _ = build_pipeline(transport, store=store)

    artifact = await pipeline.generate_image("a cat", caller, model_id="fake/dall-e-3", size="256x256")

    assert artifact.asset_ref == "asset-1"
    assert artifact.content_type == "image/png"
    assert artifact.model == "dall-e-3"
    assert transport.image_calls[0].size == "256x256"
    _, _, metadata = store.items[0]
    assert metadata == {
        "source_prompt": "a cat",
        "generated": True,
        "model": "dall-e-3",
        "provider": "fake",
        "revised_prompt": "a tabby cat",
    }


@pytest.mark.asyncio
async def test_generate_image_fetches_url_results(caller):
    transport = FakeTransport(image=ImageResult(url="https://cdn.example/img.jpg"), fetched=JPEG_BYTES)
    store = FakeStore()
    pipeline, _ = build_pipeline(transport, store=store)

    artifact = await pipeline.generate_image("a dog", caller, model_id="fake/gpt-image-1")

    assert transport.fetched_urls == ["https://cdn.example/img.jpg"]
    assert artifact.content_type == "image/jpeg"
    assert store.items[0][0] == JPEG_BYTES


@pytest.mark.asyncio
async def test_generate_image_rejects_non_image_bytes(caller):
    store = FakeStore()
    pipeline, _ = build_pipeline(FakeTransport(image=ImageResult(data=b"<html>nope</html>")), store=store)

    with pytest.raises(ProviderProtocolError):
        await pipeline.generate_image("a cat", caller, model_id="fake/dall-e-3")

    assert store.items == []


class ThreadRecordingStore(FakeStore):
    def __init__(self):
        super().__init__()
        self.threads: list[int] = []

    def store(self, data: bytes, content_type: str, metadata: dict) -> str:
        self.threads.append(threading.get_ident())
        return super().store(data, content_type, metadata)


@pytest.mark.asyncio
async def test_asset_writes_run_off_the_event_loop(caller):
    store = ThreadRecordingStore()
    pipeline, _ = build_pipeline(FakeTransport(), store=store)
    loop_thread = threading.get_ident()

    await pipeline.generate_image("a cat", caller, model_id="fake/dall-e-3")
    await pipeline.analyze_screenshot(ScreenshotUpload(PNG_BYTES, "image/png"), caller, model_id="fake/v")

    assert len(store.threads) == 2
    assert loop_thread not in store.threads
