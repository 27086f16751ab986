"""Ollama generate API client (newline-delimited JSON stream)."""

from __future__ import annotations

import json
from contextlib import aclosing
from typing import Any, AsyncIterator

from relaygate.core.models import StreamChunk
from relaygate.providers.base import GenerationOptions, ProviderClient, ProviderCredentials
from relaygate.util.logger import logger


def build_generate_prompt(system_prompt: str, user_prompt: str) -> str:
    return f"{system_prompt}\n\nUser: {user_prompt}\n\nAssistant:"


def _clean_model_id(internal_model_id: str) -> str:
    if internal_model_id.startswith("ollama/"):
        return internal_model_id[len("ollama/"):]
    return internal_model_id


def _ollama_options(options: GenerationOptions | None) -> dict[str, Any]:
    if options is None:
        return {}
    mapped: dict[str, Any] = {}
    if options.temperature is not None:
        mapped["temperature"] = options.temperature
    if options.max_tokens is not None:
        mapped["num_predict"] = options.max_tokens
    if options.top_p is not None:
        mapped["top_p"] = options.top_p
    return mapped


class OllamaClient(ProviderClient):
    name = "ollama"

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
            "model": _clean_model_id(internal_model_id),
            "prompt": build_generate_prompt(system_prompt, user_prompt),
            "stream": stream,
        }
        mapped = _ollama_options(options)
        if mapped:
            payload["options"] = mapped
        return payload

    async def stream_generate(
        self,
        system_prompt: str,
        user_prompt: str,
        internal_model_id: str,
        credentials: ProviderCredentials,
        options: GenerationOptions | None = None,
    ) -> AsyncIterator[StreamChunk]:
        url = f"{credentials.base_url.rstrip('/')}/api/generate"
        payload = self._payload(system_prompt, user_prompt, internal_model_id, options, stream=True)
        logger.info("ollama stream model=%s prompt_chars=%d", payload["model"], len(payload["prompt"]))
        token_count = 0
        async with aclosing(self._stream_lines(url, payload, self._headers(credentials))) as lines:
            async for line in lines:
                if not line.strip():
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("ollama unparsable stream line dropped line=%s", line[:200])
                    continue
                if not isinstance(data, dict):
                    continue
                if data.get("error"):
                    logger.warning("ollama in-stream error model=%s error=%s", payload["model"], data["error"])
                    return
                text = data.get("response")
                if isinstance(text, str) and text:
                    token_count += 1
                    yield StreamChunk(text=text)
                if data.get("done") is True:
                    logger.info("ollama stream done model=%s tokens=%d", payload["model"], token_count)
                    yield StreamChunk(text="", is_final=True)
                    return

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        internal_model_id: str,
        credentials: ProviderCredentials,
        options: GenerationOptions | None = None,
    ) -> str:
        url = f"{credentials.base_url.rstrip('/')}/api/generate"
        payload = self._payload(system_prompt, user_prompt, internal_model_id, options, stream=False)
        data = await self._post_json(url, payload, self._headers(credentials))
        return str(data.get("response") or "")

    async def list_models(self, credentials: ProviderCredentials) -> list[str]:
        data = await self._get_json(f"{credentials.base_url.rstrip('/')}/api/tags", self._headers(credentials))
        models = data.get("models") or []
        return [str(item["name"]) for item in models if isinstance(item, dict) and item.get("name")]
