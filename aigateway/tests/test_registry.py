from dataclasses import replace

import pytest

from aigateway.app.config.settings import ProviderEndpoint, RuntimeConfig
from aigateway.app.core.errors import ConfigurationError, ProviderUnavailable
from aigateway.app.providers.registry import ProviderRegistry, build_transport
from aigateway.app.providers.types import Capability, ChatCall, ImageCall, ModelDescriptor
from aigateway.tests.fakes import ALL_CAPABILITIES, FakeTransport, make_registry, make_spec


def runtime(text="", image="", vision="", endpoints=(), direct=()):
    return RuntimeConfig(
        endpoints=tuple(endpoints),
        default_text_model=text,
        default_image_model=image,
        default_vision_model=vision,
        direct_providers=frozenset(direct),
    )


def descriptor(provider_id, model_id, capability):
    return ModelDescriptor(provider_id, model_id, capability, model_id)


def test_explicit_model_from_cache_is_resolved():
    registry = make_registry((make_spec("a"), FakeTransport("a")), (make_spec("b"), FakeTransport("b")))
    registry.cache.replace("b", [descriptor("b", "gpt-x", Capability.TEXT)])

    resolved = registry.resolve(Capability.TEXT, "gpt-x")

    assert resolved.provider_id == "b"
    assert resolved.model_id == "gpt-x"
    assert resolved.qualified_id == "b/gpt-x"


def test_provider_prefixed_model_is_resolved_without_sync():
    registry = make_registry((make_spec("a"), FakeTransport("a")))

    resolved = registry.resolve(Capability.TEXT, "a/org/model-7b")

    assert resolved.provider_id == "a"
    assert resolved.model_id == "org/model-7b"
    assert resolved.descriptor is None


def test_unknown_explicit_model_falls_back_to_default():
    registry = make_registry((make_spec("a"), FakeTransport("a")))

    resolved = registry.resolve(Capability.TEXT, "does-not-exist", defaults=runtime(text="a/default-model"))

    assert resolved.model_id == "default-model"


def test_falls_back_to_first_cached_model():
    registry = make_registry((make_spec("a"), FakeTransport("a")))
    registry.cache.replace("a", [descriptor("a", "zeta", Capability.IMAGE), descriptor("a", "alpha", Capability.IMAGE)])

    resolved = registry.resolve(Capability.IMAGE)

    assert resolved.model_id == "alpha"
    assert resolved.capability == Capability.IMAGE


def test_vision_model_serves_text_requests():
    registry = make_registry((make_spec("a"), FakeTransport("a")))
    registry.cache.replace("a", [descriptor("a", "gpt-4o", Capability.VISION)])

    assert registry.resolve(Capability.TEXT, "gpt-4o").model_id == "gpt-4o"


def test_provider_without_credential_is_unavailable():
    registry = make_registry((make_spec("a"), FakeTransport("a")), credential=None)

    with pytest.raises(ProviderUnavailable):
        registry.resolve(Capability.TEXT, "a/model")
    with pytest.raises(ProviderUnavailable):
        registry.resolve(Capability.TEXT, defaults=runtime(text="model"))


def test_provider_missing_capability_is_unavailable():
    registry = make_registry((make_spec("a", capabilities=frozenset({Capability.TEXT})), FakeTransport("a")))

    with pytest.raises(ProviderUnavailable):
        registry.resolve(Capability.IMAGE, "a/dall-e-3")


def test_nothing_routable_raises():
    with pytest.raises(ProviderUnavailable):
        ProviderRegistry().resolve(Capability.TEXT)


@pytest.mark.asyncio
async def test_complete_dispatches_on_capability():
    transport = FakeTransport("a", reply="<p>ok</p>")
    registry = make_registry((make_spec("a"), transport))

    text = await registry.complete(registry.resolve(Capability.VISION, "a/v"), ChatCall(model="v", messages=[]))
    image = await registry.complete(registry.resolve(Capability.IMAGE, "a/i"), ImageCall(model="i", prompt="cat"))

    assert text == "<p>ok</p>"
    assert image.data is not None
    assert len(transport.once_calls) == 1
    assert len(transport.image_calls) == 1


def test_list_providers_reports_credentials():
    registry = ProviderRegistry()
    registry.register(make_spec("with-key", allow_direct=True), "k", transport=FakeTransport())
    registry.register(make_spec("no-key"), None, transport=FakeTransport())

    infos = {info.provider_id: info for info in registry.list_providers()}

    assert infos["with-key"].has_credential is True
    assert infos["with-key"].allow_direct is True
    assert infos["no-key"].has_credential is False
    assert infos["no-key"].capabilities == sorted(c.value for c in ALL_CAPABILITIES)


@pytest.mark.asyncio
async def test_build_and_reload_registry_from_runtime_config():
    created = []

    def factory(spec, credential, timeout_seconds):
        transport = FakeTransport(spec.provider_id)
        created.append(transport)
        return transport

    registry = ProviderRegistry(transport_factory=factory)
    registry.build_registry(
        runtime(
            endpoints=[
                ProviderEndpoint("openai", "openai_compat", "https://api.openai.com/v1", "sk-test"),
                ProviderEndpoint("anthropic", "anthropic", "https://api.anthropic.com/v1", None),
            ],
            direct=["openai"],
        )
    )
    infos = {info.provider_id: info for info in registry.list_providers()}
    assert infos["openai"].allow_direct is True
    assert "image" in infos["openai"].capabilities
    assert "image" not in infos["anthropic"].capabilities
    assert infos["anthropic"].has_credential is False

    registry.cache.replace("anthropic", [descriptor("anthropic", "claude-3-haiku", Capability.VISION)])
    await registry.reload(runtime(endpoints=[ProviderEndpoint("openai", "openai_compat", "https://x/v1", "sk-2")]))

    assert [p.spec.provider_id for p in registry.providers()] == ["openai"]
    assert registry.cache.provider_models("anthropic") == ()
    # Replaced transports stay open for running sessions until shutdown
    assert not any(t.closed for t in created)
    await registry.aclose()
    assert all(t.closed for t in created)


def test_unknown_transport_kind_is_configuration_error():
    odd = replace(make_spec("odd"), kind="smoke-signals")
    with pytest.raises(ConfigurationError):
        build_transport(odd, "k", 5)
