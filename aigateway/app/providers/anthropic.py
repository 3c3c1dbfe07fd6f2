from __future__ import annotations

import json
import re
from typing import AsyncIterator

from aigateway.app.core.errors import ProviderProtocolError
from aigateway.app.providers.openai_compat import OpenAICompatTransport
from aigateway.app.providers.types import ChatCall, ImageCall, ImageResult, RawModel, StreamEvent

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 8192

_DATA_URL = re.compile(r"^data:(?P<media>[\w/+.-]+);base64,(?P<data>.+)$", re.DOTALL)


def _convert_part(part: dict) -> dict:
    if part.get("type") == "image_url":
        url = (part.get("image_url") or {}).get("url", "")
        match = _DATA_URL.match(url)
        if match:
            return {
                "type": "image",
                "source": {"type": "base64", "media_type": match["media"], "data": match["data"]},
            }
        return {"type": "image", "source": {"type": "url", "url": url}}
    return {"type": "text", "text": part.get("text", "")}


def to_messages_payload(call: ChatCall, stream: bool) -> dict:
    """Convert chat-completions style messages into a Messages API body."""
    system_parts: list[str] = []
    messages: list[dict] = []
    for message in call.messages:
        content = message.get("content", "")
        if message.get("role") == "system":
            system_parts.append(content if isinstance(content, str) else " ".join(
                p.get("text", "") for p in content if isinstance(p, dict)
            ))
            continue
        if isinstance(content, list):
            content = [_convert_part(p) for p in content if isinstance(p, dict)]
        messages.append({"role": message.get("role", "user"), "content": content})

    payload: dict = {
        "model": call.model,
        "messages": messages,
        "max_tokens": call.max_tokens or DEFAULT_MAX_TOKENS,
        "stream": stream,
    }
    if system_parts:
        payload["system"] = "\n\n".join(system_parts)
    if call.temperature is not None:
        payload["temperature"] = call.temperature
    return payload


class AnthropicTransport(OpenAICompatTransport):
    """Messages API transport. Shares error mapping and HTTP client handling with the OpenAI one."""

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "anthropic-version": ANTHROPIC_VERSION}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    async def list_models(self) -> list[RawModel]:
        try:
            response = await self._client.get(
                f"{self.base_url}/models", headers=self._headers(), params={"limit": 1000}
            )
            response.raise_for_status()
            data = response.json()
            return [
                RawModel(id=item["id"], data=item)
                for item in data.get("data", [])
                if isinstance(item, dict) and isinstance(item.get("id"), str)
            ]
        except Exception as exc:
            self._map_error(exc)

    async def chat_once(self, call: ChatCall) -> str:
        try:
            response = await self._client.post(
                f"{self.base_url}/messages",
                headers=self._headers(),
                json=to_messages_payload(call, stream=False),
            )
            response.raise_for_status()
            data = response.json()
            return "".join(
                block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
            )
        except Exception as exc:
            self._map_error(exc)

    async def chat_stream(self, call: ChatCall) -> AsyncIterator[StreamEvent]:
        try:
            async with self._client.stream(
                "POST",
                f"{self.base_url}/messages",
                headers=self._headers(),
                json=to_messages_payload(call, stream=True),
            ) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    try:
                        event = json.loads(line[5:].strip())
                    except json.JSONDecodeError:
                        continue
                    kind = event.get("type")
                    if kind == "content_block_delta":
                        delta = event.get("delta") or {}
                        if delta.get("type") == "text_delta" and delta.get("text"):
                            yield StreamEvent(type="delta", delta=delta["text"])
                    elif kind == "message_delta" and event.get("usage"):
                        yield StreamEvent(type="usage", usage=event["usage"])
                    elif kind == "message_stop":
                        yield StreamEvent(type="done")
                        return
                    elif kind == "error":
                        error = event.get("error") or {}
                        raise ProviderProtocolError(
                            error.get("message", "Provider stream error"), self.provider_id
                        )
            yield StreamEvent(type="done")
        except Exception as exc:
            self._map_error(exc)

    async def generate_image(self, call: ImageCall) -> ImageResult:
        raise ProviderProtocolError("Provider does not generate images", self.provider_id)
