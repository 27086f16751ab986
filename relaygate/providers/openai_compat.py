"""OpenAI-compatible chat completions client (SSE stream)."""

from __future__ import annotations

import json
from contextlib import aclosing
from typing import Any, AsyncIterator

from relaygate.core.models import StreamChunk
from relaygate.providers.base import GenerationOptions, ProviderClient, ProviderCredentials, iter_sse_data
from relaygate.util.logger import logger


_DONE_SENTINEL = "[DONE]"


def _delta_text(event: dict[str, Any]) -> str:
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    if not isinstance(first, dict):
        return ""
    delta = first.get("delta")
    if isinstance(delta, dict) and isinstance(delta.get("content"), str):
        return delta["content"]
    return ""


class OpenAICompatClient(ProviderClient):
    name = "openai"

    def _headers(self, credentials: ProviderCredentials) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if credentials.api_key:
            headers["Authorization"] = f"Bearer {credentials.api_key}"
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
        payload: dict[str, Any] = {
            "model": internal_model_id,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "stream": stream,
        }
        if options is not None:
            if options.temperature is not None:
                payload["temperature"] = options.temperature
            if options.max_tokens is not None:
                payload["max_tokens"] = options.max_tokens
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
        url = f"{credentials.base_url.rstrip('/')}/chat/completions"
        payload = self._payload(system_prompt, user_prompt, internal_model_id, options, stream=True)
        logger.info("openai stream model=%s", internal_model_id)
        async with aclosing(self._stream_lines(url, payload, self._headers(credentials))) as lines:
            async for data in iter_sse_data(lines):
                if data.strip() == _DONE_SENTINEL:
                    yield StreamChunk(text="", is_final=True)
                    return
                try:
                    event = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("openai unparsable sse payload dropped data=%s", data[:200])
                    continue
                if not isinstance(event, dict):
                    continue
                if event.get("error"):
                    logger.warning("openai in-stream error model=%s error=%s", internal_model_id, event["error"])
                    return
                text = _delta_text(event)
                if text:
                    yield StreamChunk(text=text)

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        internal_model_id: str,
        credentials: ProviderCredentials,
        options: GenerationOptions | None = None,
    ) -> str:
        url = f"{credentials.base_url.rstrip('/')}/chat/completions"
        payload = self._payload(system_prompt, user_prompt, internal_model_id, options, stream=False)
        data = await self._post_json(url, payload, self._headers(credentials))
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return ""
        message = choices[0].get("message") or {}
        return str(message.get("content") or "")

    async def list_models(self, credentials: ProviderCredentials) -> list[str]:
        data = await self._get_json(f"{credentials.base_url.rstrip('/')}/models", self._headers(credentials))
        items = data.get("data") or []
        return [str(item["id"]) for item in items if isinstance(item, dict) and item.get("id")]
