from __future__ import annotations

from typing import AsyncIterator, Protocol

from aigateway.app.providers.types import ChatCall, ImageCall, ImageResult, RawModel, StreamEvent


class Transport(Protocol):
    """Wire-level client for one provider. Picked by ``ProviderSpec.kind``, never subclassed per capability."""

    provider_id: str

    async def list_models(self) -> list[RawModel]:
        ...

    def chat_stream(self, call: ChatCall) -> AsyncIterator[StreamEvent]:
        ...

    async def chat_once(self, call: ChatCall) -> str:
        ...

    async def generate_image(self, call: ImageCall) -> ImageResult:
        ...

    async def fetch_bytes(self, url: str) -> tuple[bytes, str | None]:
        ...

    async def aclose(self) -> None:
        ...
