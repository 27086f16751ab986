"""
上游 provider 的公共部分：共享 httpx 连接池、分行缓冲、SSE 解析与统一的流式契约。
具体 provider（Ollama / OpenAI 兼容 / Anthropic）只负责各自的请求与响应形状。
"""

from __future__ import annotations

import asyncio
import codecs
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping

import httpx

from relaygate.config.settings import settings
from relaygate.core.errors import UpstreamUnavailableError, truncate_detail
from relaygate.core.models import StreamChunk
from relaygate.util.logger import logger


_upstream_async_client: httpx.AsyncClient | None = None
_upstream_client_lock: asyncio.Lock | None = None


def _upstream_http_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=max(10, int(settings.upstream_max_connections)),
        max_keepalive_connections=max(5, int(settings.upstream_max_keepalive_connections)),
    )


def _upstream_http_timeout() -> httpx.Timeout:
    timeout = float(settings.upstream_timeout_seconds)
    # 流式读取可能很久才有首个 token，read 不设上限，首包超时由 relay 层按需控制
    return httpx.Timeout(connect=timeout, read=None, write=timeout, pool=timeout)


async def get_upstream_async_client() -> httpx.AsyncClient:
    global _upstream_async_client, _upstream_client_lock
    if _upstream_async_client is not None:
        return _upstream_async_client
    if _upstream_client_lock is None:
        _upstream_client_lock = asyncio.Lock()
    async with _upstream_client_lock:
        if _upstream_async_client is None:
            _upstream_async_client = httpx.AsyncClient(
                http2=False,
                timeout=_upstream_http_timeout(),
                limits=_upstream_http_limits(),
            )
    return _upstream_async_client


async def close_upstream_async_client() -> None:
    global _upstream_async_client
    if _upstream_async_client is not None:
        await _upstream_async_client.aclose()
        _upstream_async_client = None


def _decode_json_or_text(body: bytes) -> dict[str, Any] | str:
    text = body.decode("utf-8", errors="replace")
    if not text:
        return ""
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
        return text
    except json.JSONDecodeError:
        return text


def _safe_error_detail(payload: dict[str, Any] | str) -> str:
    if isinstance(payload, str):
        return truncate_detail(payload)
    error = payload.get("error")
    if isinstance(error, str):
        return truncate_detail(error)
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return truncate_detail(error["message"])
    return truncate_detail(json.dumps(payload, ensure_ascii=False))


def _is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


@dataclass(frozen=True, slots=True)
class ProviderCredentials:
    base_url: str
    api_key: str = ""


@dataclass(frozen=True, slots=True)
class GenerationOptions:
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None


class LineBuffer:
    """Accumulates raw network reads and releases only complete lines."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, data: bytes) -> list[str]:
        self._pending += self._decoder.decode(data)
        if "\n" not in self._pending:
            return []
        *complete, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in complete]

    def flush(self) -> str:
        self._pending += self._decoder.decode(b"", final=True)
        tail, self._pending = self._pending.rstrip("\r"), ""
        return tail


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the joined ``data:`` payload of each SSE event."""

    data_lines: list[str] = []
    async for line in lines:
        if not line.strip():
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip(" "))
    if data_lines:
        yield "\n".join(data_lines)


class ProviderClient(ABC):
    """Uniform streaming contract over one provider's HTTP API."""

    name = "provider"

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client

    async def _http(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        return await get_upstream_async_client()

    @abstractmethod
    def stream_generate(
        self,
        system_prompt: str,
        user_prompt: str,
        internal_model_id: str,
        credentials: ProviderCredentials,
        options: GenerationOptions | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Lazy, finite, non-restartable sequence of chunks."""

    @abstractmethod
    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        internal_model_id: str,
        credentials: ProviderCredentials,
        options: GenerationOptions | None = None,
    ) -> str:
        """Single complete response."""

    @abstractmethod
    async def list_models(self, credentials: ProviderCredentials) -> list[str]:
        """Model ids the provider reports as available."""

    def _headers(self, credentials: ProviderCredentials) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _stream_lines(
        self,
        url: str,
        payload: dict[str, Any],
        headers: Mapping[str, str],
    ) -> AsyncIterator[str]:
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        logger.debug("%s stream start url=%s payload_bytes=%d", self.name, url, len(body))
        client = await self._http()
        started = False
        try:
            async with client.stream("POST", url, content=body, headers=dict(headers)) as resp:
                logger.debug("%s stream connected url=%s status=%s", self.name, url, resp.status_code)
                if not _is_success(resp.status_code):
                    detail = _safe_error_detail(_decode_json_or_text(await resp.aread()))
                    logger.warning(
                        "%s upstream http error url=%s status=%s body=%s",
                        self.name,
                        url,
                        resp.status_code,
                        detail,
                    )
                    raise UpstreamUnavailableError(resp.status_code, detail)
                buffer = LineBuffer()
                async for raw in resp.aiter_bytes():
                    for line in buffer.feed(raw):
                        started = True
                        yield line
                tail = buffer.flush()
                if tail:
                    yield tail
        except httpx.HTTPError as exc:
            detail = (str(exc) or "").strip() or "connection_failed_or_timeout"
            if started:
                # 已经向下游输出过内容：不再抛错，由 relay 层按“提前结束”处理
                logger.warning("%s stream interrupted url=%s error=%s", self.name, url, detail)
                return
            logger.warning("%s stream http_error url=%s error=%s", self.name, url, detail)
            raise UpstreamUnavailableError(0, detail) from exc

    async def _post_json(self, url: str, payload: dict[str, Any], headers: Mapping[str, str]) -> dict[str, Any]:
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        logger.debug("%s post start url=%s payload_bytes=%d", self.name, url, len(body))
        client = await self._http()
        try:
            response = await client.post(url, content=body, headers=dict(headers))
        except httpx.HTTPError as exc:
            detail = (str(exc) or "").strip() or "connection_failed_or_timeout"
            logger.warning("%s post http_error url=%s error=%s", self.name, url, detail)
            raise UpstreamUnavailableError(0, detail) from exc
        decoded = _decode_json_or_text(response.content)
        if not _is_success(response.status_code):
            detail = _safe_error_detail(decoded)
            logger.warning("%s upstream http error url=%s status=%s body=%s", self.name, url, response.status_code, detail)
            raise UpstreamUnavailableError(response.status_code, detail)
        if not isinstance(decoded, dict):
            raise UpstreamUnavailableError(response.status_code, f"unexpected non-JSON body: {decoded}")
        return decoded

    async def _get_json(self, url: str, headers: Mapping[str, str]) -> dict[str, Any]:
        client = await self._http()
        try:
            response = await client.get(url, headers=dict(headers), timeout=5.0)
        except httpx.HTTPError as exc:
            detail = (str(exc) or "").strip() or "connection_failed_or_timeout"
            raise UpstreamUnavailableError(0, detail) from exc
        decoded = _decode_json_or_text(response.content)
        if not _is_success(response.status_code) or not isinstance(decoded, dict):
            raise UpstreamUnavailableError(response.status_code, _safe_error_detail(decoded))
        return decoded
