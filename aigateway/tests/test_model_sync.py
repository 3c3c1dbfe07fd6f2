import pytest

from aigateway.app.core.errors import ProviderUnavailable
from aigateway.app.providers.types import Capability, RawModel
from aigateway.app.services.model_sync import ModelSyncService, classify_model, to_descriptor
from aigateway.tests.fakes import FakeTransport, make_registry, make_spec


@pytest.mark.parametrize(
    "raw, expected",
    [
        (RawModel("dall-e-3"), Capability.IMAGE),
        (RawModel("gpt-image-1"), Capability.IMAGE),
        (RawModel("gpt-4o-mini"), Capability.VISION),
        (RawModel("llava-v1.6-mistral-7b"), Capability.VISION),
        (RawModel("claude-3-5-sonnet-20241022"), Capability.VISION),
        (RawModel("llama-3.2-3b-instruct"), Capability.TEXT),
        (RawModel("gpt-3.5-turbo"), Capability.TEXT),
    ],
)
def test_classification_by_name(raw, expected):
    assert classify_model(raw) == expected


def test_non_generation_models_are_skipped():
    assert classify_model(RawModel("text-embedding-3-small")) is None
    assert classify_model(RawModel("whisper-1")) is None
    assert classify_model(RawModel("omni-moderation-latest")) is None


def test_metadata_wins_over_name():
    # Name looks like an image model, metadata says text in and text out
    raw = RawModel("flux-writer", {"architecture": {"modality": "text->text"}})
    assert classify_model(raw) == Capability.TEXT

    raw = RawModel("plain-model", {"architecture": {"input_modalities": ["text", "image"], "output_modalities": ["text"]}})
    assert classify_model(raw) == Capability.VISION

    raw = RawModel("painter", {"output_modalities": ["image"]})
    assert classify_model(raw) == Capability.IMAGE


def test_classification_is_deterministic():
    raw = RawModel("gpt-4o", {"owned_by": "openai"})
    assert {classify_model(raw) for _ in range(5)} == {Capability.VISION}


def test_descriptor_reads_limits_from_metadata():
    descriptor = to_descriptor(
        "local",
        RawModel("qwen2.5-7b", {"context_length": "32768", "top_provider": {"max_completion_tokens": 4096}}),
    )
    assert descriptor.capability == Capability.TEXT
    assert descriptor.context_length == 32768
    assert descriptor.max_output_tokens == 4096
    assert descriptor.display_name == "qwen2.5-7b"


@pytest.mark.asyncio
async def test_partial_failure_keeps_healthy_provider_models():
    healthy = FakeTransport(
        "healthy",
        models=[RawModel("gpt-4o"), RawModel("dall-e-3"), RawModel("gpt-3.5-turbo"), RawModel("text-embedding-3-small")],
    )
    broken = FakeTransport("broken", list_error=ProviderUnavailable("Provider is unreachable", "broken"))
    registry = make_registry((make_spec("healthy"), healthy), (make_spec("broken"), broken))
    service = ModelSyncService(registry, retry_backoff_seconds=0)

    result = await service.sync()

    assert result.counts == {"text": 1, "image": 1, "vision": 1}
    assert result.errors == {"broken": "Provider is unreachable"}
    assert result.providers == {"healthy": 3}
    assert broken.list_calls == 2
    assert healthy.list_calls == 1
    assert [m.model_id for m in service.list_models(Capability.TEXT)] == ["gpt-3.5-turbo"]
    assert registry.cache.synced_at == result.synced_at


@pytest.mark.asyncio
async def test_sync_replaces_provider_slice():
    transport = FakeTransport("p", models=[RawModel("old-model")])
    registry = make_registry((make_spec("p"), transport))
    service = ModelSyncService(registry, retry_backoff_seconds=0)
    await service.sync()

    transport.models = [RawModel("new-model"), RawModel("new-model")]
    await service.sync()

    assert [m.model_id for m in service.list_models()] == ["new-model"]


@pytest.mark.asyncio
async def test_sync_reports_missing_credential_and_unknown_provider():
    transport = FakeTransport("nokey", models=[RawModel("m")])
    registry = make_registry((make_spec("nokey"), transport), credential=None)
    service = ModelSyncService(registry, retry_backoff_seconds=0)

    result = await service.sync(["nokey", "ghost"])

    assert "No credential configured" in result.errors["nokey"]
    assert "Unknown provider" in result.errors["ghost"]
    assert transport.list_calls == 0
    assert result.counts == {"text": 0, "image": 0, "vision": 0}
