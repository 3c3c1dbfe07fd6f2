from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal


class Capability(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VISION = "vision"

    def serves(self, requested: "Capability") -> bool:
        """Vision models also handle plain text requests."""
        return self == requested or (self == Capability.VISION and requested == Capability.TEXT)


@dataclass(frozen=True)
class ProviderSpec:
    """A provider is a tagged record: ``kind`` picks the wire protocol, ``capabilities`` the call types."""

    provider_id: str
    display_name: str
    kind: Literal["openai_compat", "anthropic"]
    base_url: str
    capabilities: frozenset[Capability]
    allow_direct: bool = False


@dataclass(frozen=True)
class RawModel:
    """One entry of a provider's model listing, before classification."""

    id: str
    data: dict = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class ModelDescriptor:
    provider_id: str
    model_id: str
    capability: Capability
    display_name: str
    context_length: int | None = None
    max_output_tokens: int | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.provider_id, self.model_id)


@dataclass(frozen=True)
class ProviderInfo:
    provider_id: str
    display_name: str
    kind: str
    capabilities: list[str]
    has_credential: bool
    allow_direct: bool


@dataclass
class ChatCall:
    """Uniform call for text and vision models."""

    model: str
    messages: list[dict]
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass
class ImageCall:
    model: str
    prompt: str
    size: str | None = None


@dataclass
class ImageResult:
    data: bytes | None = None
    url: str | None = None
    content_type: str | None = None
    revised_prompt: str | None = None


@dataclass
class StreamEvent:
    type: Literal["delta", "usage", "done"]
    delta: str | None = None
    usage: dict | None = None
