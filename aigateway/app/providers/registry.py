from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable

import httpx

from aigateway.app.config.settings import RuntimeConfig
from aigateway.app.core.errors import ConfigurationError, ProviderUnavailable
from aigateway.app.providers.anthropic import AnthropicTransport
from aigateway.app.providers.base import Transport
from aigateway.app.providers.model_cache import ModelCache
from aigateway.app.providers.openai_compat import OpenAICompatTransport
from aigateway.app.providers.types import (
    Capability,
    ChatCall,
    ImageCall,
    ImageResult,
    ModelDescriptor,
    ProviderInfo,
    ProviderSpec,
    StreamEvent,
)

logger = logging.getLogger("aigateway")

_TRANSPORTS: dict[str, type[OpenAICompatTransport]] = {
    "openai_compat": OpenAICompatTransport,
    "anthropic": AnthropicTransport,
}

_DISPLAY_NAMES = {"openai": "OpenAI", "anthropic": "Anthropic", "local": "Local (OpenAI compatible)"}

_CAPABILITIES = {
    "openai": frozenset({Capability.TEXT, Capability.IMAGE, Capability.VISION}),
    "anthropic": frozenset({Capability.TEXT, Capability.VISION}),
    "local": frozenset({Capability.TEXT, Capability.VISION}),
}


def build_transport(
    spec: ProviderSpec,
    credential: str | None,
    timeout_seconds: float,
    client: httpx.AsyncClient | None = None,
) -> Transport:
    factory = _TRANSPORTS.get(spec.kind)
    if factory is None:
        raise ConfigurationError(f"Unknown provider kind: {spec.kind}")
    return factory(
        provider_id=spec.provider_id,
        base_url=spec.base_url,
        api_key=credential,
        timeout_seconds=timeout_seconds,
        client=client,
    )


@dataclass
class RegisteredProvider:
    spec: ProviderSpec
    credential: str | None
    transport: Transport

    @property
    def usable(self) -> bool:
        return bool(self.credential)

    def info(self) -> ProviderInfo:
        return ProviderInfo(
            provider_id=self.spec.provider_id,
            display_name=self.spec.display_name,
            kind=self.spec.kind,
            capabilities=sorted(c.value for c in self.spec.capabilities),
            has_credential=self.usable,
            allow_direct=self.spec.allow_direct,
        )


@dataclass(frozen=True)
class ResolvedModel:
    provider: ProviderSpec
    model_id: str
    capability: Capability
    descriptor: ModelDescriptor | None = None

    @property
    def provider_id(self) -> str:
        return self.provider.provider_id

    @property
    def qualified_id(self) -> str:
        return f"{self.provider.provider_id}/{self.model_id}"


class ProviderRegistry:
    def __init__(
        self,
        cache: ModelCache | None = None,
        timeout_seconds: float = 30,
        transport_factory: Callable[..., Transport] = build_transport,
    ):
        self._providers: dict[str, RegisteredProvider] = {}
        self.cache = cache or ModelCache()
        self.timeout_seconds = timeout_seconds
        self._transport_factory = transport_factory
        self._runtime: RuntimeConfig | None = None
        self._retired: list[Transport] = []

    def register(
        self,
        provider: ProviderSpec,
        credential: str | None,
        transport: Transport | None = None,
    ) -> RegisteredProvider:
        if transport is None:
            transport = self._transport_factory(provider, credential, self.timeout_seconds)
        entry = RegisteredProvider(spec=provider, credential=credential or None, transport=transport)
        self._providers[provider.provider_id] = entry
        if not entry.usable:
            logger.warning("Provider registered without credential", extra={"provider_id": provider.provider_id})
        return entry

    def unregister(self, provider_id: str) -> RegisteredProvider | None:
        self.cache.drop(provider_id)
        return self._providers.pop(provider_id, None)

    def get(self, provider_id: str) -> RegisteredProvider:
        if provider_id not in self._providers:
            raise ProviderUnavailable(f"Unknown provider: {provider_id}", provider_id)
        return self._providers[provider_id]

    def providers(self) -> list[RegisteredProvider]:
        return [self._providers[pid] for pid in sorted(self._providers)]

    def list_providers(self) -> list[ProviderInfo]:
        return [entry.info() for entry in self.providers()]

    def routable(self, capability: Capability) -> list[RegisteredProvider]:
        """Providers with a credential that declare ``capability``."""
        return [p for p in self.providers() if p.usable and capability in p.spec.capabilities]

    def _require_routable(self, provider_id: str, capability: Capability) -> RegisteredProvider:
        entry = self.get(provider_id)
        if not entry.usable:
            raise ProviderUnavailable(f"No credential configured for provider {provider_id}", provider_id)
        if capability not in entry.spec.capabilities:
            raise ProviderUnavailable(
                f"Provider {provider_id} does not support {capability.value} models", provider_id
            )
        return entry

    def _split(self, model_ref: str) -> tuple[str | None, str]:
        # Model ids can contain "/" (org/model); only a registered prefix is a provider.
        head, sep, tail = model_ref.partition("/")
        if sep and head in self._providers and tail:
            return head, tail
        return None, model_ref

    def _lookup(self, model_id: str, capability: Capability) -> ResolvedModel | None:
        routable = {p.spec.provider_id: p for p in self.routable(capability)}
        for descriptor in self.cache.find(model_id, capability):
            if descriptor.provider_id in routable:
                return ResolvedModel(routable[descriptor.provider_id].spec, model_id, capability, descriptor)
        return None

    def _resolve_ref(self, model_ref: str, capability: Capability, strict: bool) -> ResolvedModel | None:
        provider_id, model_id = self._split(model_ref)
        if provider_id is not None:
            entry = self._require_routable(provider_id, capability)
            descriptor = self.cache.get(provider_id, model_id)
            if descriptor is not None and not descriptor.capability.serves(capability):
                if strict:
                    return None
                raise ProviderUnavailable(
                    f"Model {model_ref} is not a {capability.value} model", provider_id
                )
            return ResolvedModel(entry.spec, model_id, capability, descriptor)

        found = self._lookup(model_id, capability)
        if found or strict:
            return found
        # Default named without provider and not yet synced: first routable provider serves it.
        routable = self.routable(capability)
        if routable:
            return ResolvedModel(routable[0].spec, model_id, capability, None)
        return None

    def resolve(
        self,
        capability: Capability,
        explicit_id: str | None = None,
        defaults: RuntimeConfig | None = None,
    ) -> ResolvedModel:
        """Pick a provider+model: a valid explicit id first, then the configured default, then the cache."""
        if explicit_id:
            resolved = self._resolve_ref(explicit_id.strip(), capability, strict=True)
            if resolved:
                return resolved
            logger.warning(
                "Requested model unavailable, falling back to default",
                extra={"model_id": explicit_id, "capability": capability.value},
            )

        runtime = defaults or self._runtime
        default_ref = runtime.default_model(capability.value) if runtime else ""
        if default_ref:
            resolved = self._resolve_ref(default_ref, capability, strict=False)
            if resolved:
                return resolved

        routable = {p.spec.provider_id: p for p in self.routable(capability)}
        for descriptor in self.cache.list(capability):
            if descriptor.provider_id in routable:
                return ResolvedModel(
                    routable[descriptor.provider_id].spec, descriptor.model_id, capability, descriptor
                )

        raise ProviderUnavailable(f"No {capability.value} model is available")

    def stream(self, resolved: ResolvedModel, call: ChatCall) -> AsyncIterator[StreamEvent]:
        entry = self._require_routable(resolved.provider_id, resolved.capability)
        return entry.transport.chat_stream(call)

    async def complete(self, resolved: ResolvedModel, call: ChatCall | ImageCall) -> str | ImageResult:
        """Single non-streamed call, dispatched on the resolved capability tag."""
        entry = self._require_routable(resolved.provider_id, resolved.capability)
        handlers = {
            Capability.TEXT: entry.transport.chat_once,
            Capability.VISION: entry.transport.chat_once,
            Capability.IMAGE: entry.transport.generate_image,
        }
        return await handlers[resolved.capability](call)

    def build_registry(self, runtime: RuntimeConfig) -> None:
        self._runtime = runtime
        for endpoint in runtime.endpoints:
            spec = ProviderSpec(
                provider_id=endpoint.provider_id,
                display_name=_DISPLAY_NAMES.get(endpoint.provider_id, endpoint.provider_id),
                kind=endpoint.kind,
                base_url=endpoint.base_url,
                capabilities=_CAPABILITIES.get(endpoint.provider_id, frozenset({Capability.TEXT})),
                allow_direct=endpoint.provider_id in runtime.direct_providers,
            )
            self.register(spec, endpoint.api_key)

    async def reload(self, runtime: RuntimeConfig) -> None:
        """Swap in providers from a fresh runtime config.

        Old transports stay open until shutdown: running sessions still hold them.
        """
        previous = self._providers
        self._providers = {}
        self.build_registry(runtime)
        for provider_id in previous:
            if provider_id not in self._providers:
                self.cache.drop(provider_id)
        self._retired.extend(entry.transport for entry in previous.values())
        logger.info("Provider registry reloaded", extra={"providers": sorted(self._providers)})

    async def aclose(self) -> None:
        for entry in self._providers.values():
            await entry.transport.aclose()
        for transport in self._retired:
            await transport.aclose()
        self._retired.clear()


# Global registry instance
registry = ProviderRegistry()
