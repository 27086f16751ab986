"""Anthropic messages API client (typed SSE events)."""

from __future__ import annotations

import json
from contextlib import aclosing
from typing import Any, AsyncIterator

from relaygate.config.settings import settings
from relaygate.core.models import StreamChunk
from relaygate.providers.base import GenerationOptions, ProviderClient, ProviderCredentials, iter_sse_data
from relaygate.util.logger import logger


class AnthropicClient(ProviderClient):
    name = "anthropic"

    def _headers(self, credentials: ProviderCredentials) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "anthropic-version": settings.anthropic_version,
        }
        if credentials.api_key:
            headers["x-api-key"] = credentials.api_key
        return headers

    def _payload(
        self,
        system_prompt: str,
        user_prompt: str,
        internal_model_id: str,
        options: GenerationOptions | None,
        *,
        stream: bool,
    ) -> dict[str, Any]:
        max_tokens = settings.default_max_tokens
        if options is not None and options.max_tokens is not None:
            max_tokens = options.max_tokens
        payload: dict[str, Any] = {
            "model": internal_model_id,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
            "max_tokens": max_tokens,
            "stream": stream,
        }
        if options is not None:
            if options.temperature is not None:
                # Anthropic 的 temperature 范围是 [0, 1]
                payload["temperature"] = min(1.0, options.temperature)
            if options.top_p is not None:
                payload["top_p"] = options.top_p
        return payload

    async def stream_generate(
        self,
        system_prompt: str,
        user_prompt: str,
        internal_model_id: str,
        credentials: ProviderCredentials,
        options: GenerationOptions | None = None,
    ) -> AsyncIterator[StreamChunk]:
        url = f"{credentials.base_url.rstrip('/')}/v1/messages"
        payload = self._payload(system_prompt, user_prompt, internal_model_id, options, stream=True)
        logger.info("anthropic stream model=%s", internal_model_id)
        async with aclosing(self._stream_lines(url, payload, self._headers(credentials))) as lines:
            async for data in iter_sse_data(lines):
                try:
                    event = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("anthropic unparsable sse payload dropped data=%s", data[:200])
                    continue
                if not isinstance(event, dict):
                    continue
                event_type = str(event.get("type") or "")
                if event_type == "content_block_delta":
                    delta = event.get("delta") or {}
                    text = delta.get("text") if isinstance(delta, dict) else None
                    if isinstance(text, str) and text:
                        yield StreamChunk(text=text)
                elif event_type == "message_stop":
                    yield StreamChunk(text="", is_final=True)
                    return
                elif event_type == "error":
                    logger.warning("anthropic in-stream error model=%s error=%s", internal_model_id, event.get("error"))
                    return

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        internal_model_id: str,
        credentials: ProviderCredentials,
        options: GenerationOptions | None = None,
    ) -> str:
        url = f"{credentials.base_url.rstrip('/')}/v1/messages"
        payload = self._payload(system_prompt, user_prompt, internal_model_id, options, stream=False)
        data = await self._post_json(url, payload, self._headers(credentials))
        parts = data.get("content") or []
        return "".join(
            str(part.get("text") or "") for part in parts if isinstance(part, dict) and part.get("type") == "text"
        )

    async def list_models(self, credentials: ProviderCredentials) -> list[str]:
        data = await self._get_json(f"{credentials.base_url.rstrip('/')}/v1/models", self._headers(credentials))
        items = data.get("data") or []
        return [str(item["id"]) for item in items if isinstance(item, dict) and item.get("id")]
