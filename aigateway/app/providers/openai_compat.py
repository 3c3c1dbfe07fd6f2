from __future__ import annotations

import base64
import json
from typing import AsyncIterator, NoReturn

import httpx

from aigateway.app.core.errors import ProviderProtocolError, ProviderUnavailable
from aigateway.app.providers.types import ChatCall, ImageCall, ImageResult, RawModel, StreamEvent


def default_timeout(read_seconds: float) -> httpx.Timeout:
    return httpx.Timeout(read_seconds, connect=10.0)


class OpenAICompatTransport:
    def __init__(
        self,
        provider_id: str,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 30,
        client: httpx.AsyncClient | None = None,
    ):
        self.provider_id = provider_id
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._client = client or httpx.AsyncClient(timeout=default_timeout(timeout_seconds))

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key and self.api_key != "none":
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _map_error(self, exc: Exception) -> NoReturn:
        if isinstance(exc, (ProviderProtocolError, ProviderUnavailable)):
            raise exc
        if isinstance(exc, httpx.ConnectError):
            raise ProviderUnavailable("Provider is unreachable", self.provider_id) from exc
        if isinstance(exc, httpx.TimeoutException):
            raise ProviderProtocolError("Provider request timed out", self.provider_id) from exc
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            if status in (401, 403):
                raise ProviderUnavailable("Provider rejected the configured credential", self.provider_id) from exc
            if status == 429:
                raise ProviderProtocolError("Provider rate limit exceeded", self.provider_id, status) from exc
            if status == 404:
                raise ProviderProtocolError("Requested model not found", self.provider_id, status) from exc
            raise ProviderProtocolError("Provider returned an error", self.provider_id, status) from exc
        if isinstance(exc, (json.JSONDecodeError, KeyError, TypeError, ValueError)):
            raise ProviderProtocolError("Provider sent a malformed response", self.provider_id) from exc
        raise ProviderProtocolError("Provider communication failed", self.provider_id) from exc

    def _payload(self, call: ChatCall, stream: bool) -> dict:
        payload = {"model": call.model, "messages": call.messages, "stream": stream}
        if call.max_tokens is not None:
            payload["max_tokens"] = call.max_tokens
        if call.temperature is not None:
            payload["temperature"] = call.temperature
        return payload

    async def list_models(self) -> list[RawModel]:
        try:
            response = await self._client.get(f"{self.base_url}/models", headers=self._headers())
            response.raise_for_status()
            data = response.json()
            models = []
            for model_data in data.get("data", []):
                if isinstance(model_data, dict) and isinstance(model_data.get("id"), str):
                    models.append(RawModel(id=model_data["id"], data=model_data))
            return models
        except Exception as exc:
            self._map_error(exc)

    async def chat_once(self, call: ChatCall) -> str:
        try:
            response = await self._client.post(
                f"{self.base_url}/chat/completions",
                headers=self._headers(),
                json=self._payload(call, stream=False),
            )
            response.raise_for_status()
            data = response.json()
            return data["choices"][0]["message"]["content"] or ""
        except Exception as exc:
            self._map_error(exc)

    async def chat_stream(self, call: ChatCall) -> AsyncIterator[StreamEvent]:
        try:
            async with self._client.stream(
                "POST",
                f"{self.base_url}/chat/completions",
                headers=self._headers(),
                json=self._payload(call, stream=True),
            ) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line or not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        yield StreamEvent(type="done")
                        return
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        continue
                    if "error" in chunk:
                        raise ProviderProtocolError(
                            str(chunk["error"].get("message", "Provider stream error"))
                            if isinstance(chunk["error"], dict)
                            else "Provider stream error",
                            self.provider_id,
                        )
                    if chunk.get("choices"):
                        delta = chunk["choices"][0].get("delta") or {}
                        if delta.get("content"):
                            yield StreamEvent(type="delta", delta=delta["content"])
                    if chunk.get("usage"):
                        yield StreamEvent(type="usage", usage=chunk["usage"])
            yield StreamEvent(type="done")
        except Exception as exc:
            self._map_error(exc)

    async def generate_image(self, call: ImageCall) -> ImageResult:
        payload = {"model": call.model, "prompt": call.prompt, "n": 1}
        if call.size:
            payload["size"] = call.size
        if call.model.startswith("dall-e"):
            payload["response_format"] = "b64_json"
        try:
            response = await self._client.post(
                f"{self.base_url}/images/generations",
                headers=self._headers(),
                json=payload,
            )
            response.raise_for_status()
            item = response.json()["data"][0]
            if item.get("b64_json"):
                return ImageResult(
                    data=base64.b64decode(item["b64_json"]),
                    revised_prompt=item.get("revised_prompt"),
                )
            if item.get("url"):
                return ImageResult(url=item["url"], revised_prompt=item.get("revised_prompt"))
            raise ProviderProtocolError("Provider returned no image", self.provider_id)
        except Exception as exc:
            self._map_error(exc)

    async def fetch_bytes(self, url: str) -> tuple[bytes, str | None]:
        try:
            response = await self._client.get(url)
            response.raise_for_status()
            return response.content, response.headers.get("content-type")
        except Exception as exc:
            self._map_error(exc)

    async def aclose(self) -> None:
        await self._client.aclose()
