"""
Model discovery and classification.

For each registered provider we call its models endpoint, classify every
entry into exactly one capability and replace that provider's slice of the
model cache. Providers are listed concurrently; one failing provider never
aborts the others.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from aigateway.app.config.settings import settings
from aigateway.app.core.errors import ConfigurationError, GatewayError
from aigateway.app.providers.model_cache import ModelCache
from aigateway.app.providers.registry import ProviderRegistry, RegisteredProvider, registry
from aigateway.app.providers.types import Capability, ModelDescriptor, RawModel

logger = logging.getLogger("aigateway")

_IMAGE_PATTERNS = ("dall-e", "gpt-image", "imagen", "stable-diffusion", "sdxl", "flux", "midjourney")
_VISION_PATTERNS = (
    "vision",
    "-vl",
    "llava",
    "gpt-4o",
    "gpt-4.1",
    "claude-3",
    "claude-sonnet-4",
    "claude-opus-4",
    "gemini",
    "pixtral",
)
_EXCLUDED_PATTERNS = ("embedding", "whisper", "tts", "moderation", "rerank")

_IMAGE_WORDS = {"image", "images", "image_generation", "image-generation"}
_VISION_WORDS = {"vision", "vlm", "image_input", "image-input", "multimodal"}
_SKIP_WORDS = {"embedding", "embeddings", "moderation", "audio", "speech", "transcription"}
_TEXT_WORDS = {"text", "chat", "completion", "llm"}


def _words(value: Any) -> set[str]:
    if isinstance(value, str):
        return {w for w in re.split(r"[\s,+]+", value.lower()) if w}
    if isinstance(value, (list, tuple, set)):
        result: set[str] = set()
        for item in value:
            result |= _words(item)
        return result
    if isinstance(value, dict):
        # {"vision": true, "tools": false}
        return {str(k).lower() for k, v in value.items() if v}
    return set()


def _from_metadata(data: dict) -> Capability | str | None:
    architecture = data.get("architecture") if isinstance(data.get("architecture"), dict) else {}
    outputs = _words(data.get("output_modalities")) | _words(architecture.get("output_modalities"))
    inputs = _words(data.get("input_modalities")) | _words(architecture.get("input_modalities"))
    declared = (
        _words(data.get("modality"))
        | _words(data.get("modalities"))
        | _words(data.get("capabilities"))
        | _words(data.get("type"))
    )

    # "text->image" / "text+image->text" style modality strings
    modality = architecture.get("modality") or data.get("modality")
    if isinstance(modality, str) and "->" in modality:
        left, _, right = modality.lower().partition("->")
        inputs |= _words(left)
        outputs |= _words(right)

    if declared & _SKIP_WORDS and not declared & (_TEXT_WORDS | _VISION_WORDS):
        return "skip"

    if outputs & _IMAGE_WORDS or (declared & _IMAGE_WORDS and not declared & _TEXT_WORDS and not inputs):
        return Capability.IMAGE
    if inputs & {"image"} or declared & _VISION_WORDS:
        return Capability.VISION
    if outputs & _TEXT_WORDS or declared & _TEXT_WORDS:
        return Capability.TEXT
    return None


def classify_model(raw: RawModel) -> Capability | None:
    """Deterministic capability for one listing entry; None means skip it.

    Explicit provider metadata wins; name patterns are used only when the
    metadata says nothing; everything else is text.
    """
    name = raw.id.lower()
    if any(p in name for p in _EXCLUDED_PATTERNS):
        return None
    from_metadata = _from_metadata(raw.data or {})
    if from_metadata == "skip":
        return None
    if from_metadata is not None:
        return from_metadata
    if any(p in name for p in _IMAGE_PATTERNS):
        return Capability.IMAGE
    if any(p in name for p in _VISION_PATTERNS):
        return Capability.VISION
    return Capability.TEXT


def _as_int(*values: Any) -> int | None:
    for value in values:
        try:
            if value is not None:
                return int(value)
        except (TypeError, ValueError):
            continue
    return None


def to_descriptor(provider_id: str, raw: RawModel) -> ModelDescriptor | None:
    capability = classify_model(raw)
    if capability is None:
        return None
    data = raw.data or {}
    top_provider = data.get("top_provider") if isinstance(data.get("top_provider"), dict) else {}
    return ModelDescriptor(
        provider_id=provider_id,
        model_id=raw.id,
        capability=capability,
        display_name=str(data.get("display_name") or data.get("name") or raw.id),
        context_length=_as_int(
            data.get("context_length"), data.get("context_window"), data.get("max_context_length")
        ),
        max_output_tokens=_as_int(
            data.get("max_output_tokens"), data.get("max_completion_tokens"),
            top_provider.get("max_completion_tokens"),
        ),
    )


@dataclass
class SyncResult:
    counts: dict[str, int]
    errors: dict[str, str]
    synced_at: datetime
    providers: dict[str, int] = field(default_factory=dict)


class ModelSyncService:
    def __init__(
        self,
        registry: ProviderRegistry,
        cache: ModelCache | None = None,
        retry_backoff_seconds: float = 0.5,
    ):
        self.registry = registry
        self.cache = cache or registry.cache
        self.retry_backoff_seconds = retry_backoff_seconds
        self.last_errors: dict[str, str] = {}

    async def _list_with_retry(self, provider: RegisteredProvider) -> list[RawModel]:
        # Listing is idempotent: one retry after a short backoff.
        try:
            return await provider.transport.list_models()
        except GatewayError as exc:
            logger.warning(
                "Model listing failed, retrying once",
                extra={"provider_id": provider.spec.provider_id, "error": exc.message},
            )
        await asyncio.sleep(self.retry_backoff_seconds)
        return await provider.transport.list_models()

    async def _sync_one(self, provider: RegisteredProvider) -> int:
        provider_id = provider.spec.provider_id
        if not provider.usable:
            raise ConfigurationError(f"No credential configured for provider {provider_id}")
        raw_models = await self._list_with_retry(provider)
        descriptors: dict[str, ModelDescriptor] = {}
        for raw in raw_models:
            descriptor = to_descriptor(provider_id, raw)
            if descriptor is not None and descriptor.model_id not in descriptors:
                descriptors[descriptor.model_id] = descriptor
        self.cache.replace(provider_id, list(descriptors.values()))
        return len(descriptors)

    async def sync(self, providers: Iterable[str] | None = None) -> SyncResult:
        """Refresh the cache from every (or the named) provider; errors are reported per provider."""
        errors: dict[str, str] = {}
        if providers is None:
            targets = self.registry.providers()
        else:
            targets = []
            for provider_id in providers:
                try:
                    targets.append(self.registry.get(provider_id))
                except GatewayError as exc:
                    errors[provider_id] = exc.message

        results = await asyncio.gather(
            *(self._sync_one(p) for p in targets), return_exceptions=True
        )

        per_provider: dict[str, int] = {}
        for provider, outcome in zip(targets, results):
            provider_id = provider.spec.provider_id
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                errors[provider_id] = outcome.message if isinstance(outcome, GatewayError) else str(outcome)
                logger.warning(
                    "Model sync failed for provider",
                    extra={"provider_id": provider_id, "error": errors[provider_id]},
                )
            else:
                per_provider[provider_id] = outcome

        synced_at = datetime.now(timezone.utc)
        self.cache.synced_at = synced_at
        self.last_errors = errors
        counts = self.cache.counts()
        logger.info("Model sync finished", extra={"counts": counts, "errors": errors})
        return SyncResult(counts=counts, errors=errors, synced_at=synced_at, providers=per_provider)

    def list_models(self, capability: Capability | None = None) -> list[ModelDescriptor]:
        """Cached descriptors only; never touches the network."""
        return self.cache.list(capability)


# Global instance
model_sync = ModelSyncService(registry, retry_backoff_seconds=settings.sync_retry_backoff_seconds)
