import json
from typing import Callable

import httpx
import pytest

from relaygate.core.errors import UpstreamUnavailableError
from relaygate.core.models import Provider, ResolvedModel, StreamChunk
from relaygate.providers.anthropic import AnthropicClient
from relaygate.providers.base import GenerationOptions, LineBuffer, ProviderCredentials, iter_sse_data
from relaygate.providers.factory import build_provider_client, resolve_credentials
from relaygate.providers.ollama import OllamaClient, build_generate_prompt
from relaygate.providers.openai_compat import OpenAICompatClient


class _ChunkedStream(httpx.AsyncByteStream):
    """Response body delivered in fixed network reads, optionally failing at the end."""

    def __init__(self, parts: list[bytes], fail_with: Exception | None = None) -> None:
        self.parts = parts
        self.fail_with = fail_with

    async def __aiter__(self):
        for part in self.parts:
            yield part
        if self.fail_with is not None:
            raise self.fail_with


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def _collect(iterator) -> list[StreamChunk]:
    return [chunk async for chunk in iterator]


def test_line_buffer_holds_partial_lines_across_reads():
    buffer = LineBuffer()
    assert buffer.feed(b'{"response":"He') == []
    assert buffer.feed(b'llo"}\n{"resp') == ['{"response":"Hello"}']
    assert buffer.feed(b'onse":"!"}\r\n\n') == ['{"response":"!"}', ""]
    assert buffer.flush() == ""


def test_line_buffer_keeps_split_multibyte_characters():
    encoded = "你好\n".encode("utf-8")
    buffer = LineBuffer()
    assert buffer.feed(encoded[:2]) == []
    assert buffer.feed(encoded[2:]) == ["你好"]


def test_line_buffer_flush_returns_unterminated_tail():
    buffer = LineBuffer()
    buffer.feed(b"data: [DONE]")
    assert buffer.flush() == "data: [DONE]"


@pytest.mark.asyncio
async def test_iter_sse_data_joins_multiline_events_and_skips_comments():
    async def lines():
        for line in [": keepalive", "event: message", "data: a", "data: b", "", "data: [DONE]"]:
            yield line

    assert [item async for item in iter_sse_data(lines())] == ["a\nb", "[DONE]"]


def test_build_generate_prompt_layout():
    assert build_generate_prompt("SYS", "hi") == "SYS\n\nUser: hi\n\nAssistant:"


@pytest.mark.asyncio
async def test_ollama_stream_parses_ndjson_split_across_reads():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            stream=_ChunkedStream(
                [
                    b'{"response":"Hel',
                    b'lo","done":false}\n{"response":" world","done":false}\n',
                    b"not json\n",
                    b'{"response":"","done":true}\n',
                ]
            ),
        )

    async with _client(handler) as http:
        client = OllamaClient(client=http)
        chunks = await _collect(
            client.stream_generate(
                "SYS",
                "User: hi\n",
                "ollama/qwen2.5-coder:1.5b",
                ProviderCredentials(base_url="http://ollama.local:11434/"),
                GenerationOptions(temperature=0.2, max_tokens=64),
            )
        )

    assert chunks == [StreamChunk("Hello"), StreamChunk(" world"), StreamChunk("", is_final=True)]
    assert seen["url"] == "http://ollama.local:11434/api/generate"
    assert seen["body"]["model"] == "qwen2.5-coder:1.5b"
    assert seen["body"]["stream"] is True
    assert seen["body"]["options"] == {"temperature": 0.2, "num_predict": 64}


@pytest.mark.asyncio
async def test_ollama_mid_stream_drop_ends_without_final_chunk():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            stream=_ChunkedStream(
                [b'{"response":"a"}\n{"response":"b"}\n{"response":"c"}\n'],
                fail_with=httpx.ReadError("connection reset"),
            ),
        )

    async with _client(handler) as http:
        chunks = await _collect(
            OllamaClient(client=http).stream_generate("s", "u", "m", ProviderCredentials(base_url="http://o"))
        )

    assert [chunk.text for chunk in chunks] == ["a", "b", "c"]
    assert not any(chunk.is_final for chunk in chunks)


@pytest.mark.asyncio
async def test_non_2xx_raises_upstream_unavailable_before_any_chunk():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "model 'nope' not found, try pulling it first"})

    async with _client(handler) as http:
        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await _collect(OllamaClient(client=http).stream_generate("s", "u", "nope", ProviderCredentials(base_url="http://o")))

    assert exc_info.value.status_code == 404
    assert "not found" in exc_info.value.body


@pytest.mark.asyncio
async def test_connect_failure_raises_with_status_zero():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as http:
        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await _collect(OllamaClient(client=http).stream_generate("s", "u", "m", ProviderCredentials(base_url="http://o")))

    assert exc_info.value.status_code == 0
    assert "unreachable" in str(exc_info.value)


@pytest.mark.asyncio
async def test_openai_stream_reads_delta_content_until_done():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            stream=_ChunkedStream(
                [
                    b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n',
                    b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n',
                    b'\ndata: {"choices":[{"delta":{"content":" there"}}]}\n\n',
                    b"data: [DONE]\n\n",
                ]
            ),
        )

    async with _client(handler) as http:
        chunks = await _collect(
            OpenAICompatClient(client=http).stream_generate(
                "SYS",
                "hello",
                "gpt-4o-mini",
                ProviderCredentials(base_url="https://api.example.com/v1", api_key="sk-test"),
            )
        )

    assert chunks == [StreamChunk("Hi"), StreamChunk(" there"), StreamChunk("", is_final=True)]
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["messages"] == [
        {"role": "system", "content": "SYS"},
        {"role": "user", "content": "hello"},
    ]


@pytest.mark.asyncio
async def test_openai_generate_and_list_models():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/models"):
            return httpx.Response(200, json={"data": [{"id": "gpt-4o-mini"}, {"id": "gpt-4o"}]})
        return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": "full text"}}]})

    credentials = ProviderCredentials(base_url="https://api.example.com/v1", api_key="sk-test")
    async with _client(handler) as http:
        client = OpenAICompatClient(client=http)
        assert await client.generate("s", "u", "gpt-4o-mini", credentials) == "full text"
        assert await client.list_models(credentials) == ["gpt-4o-mini", "gpt-4o"]


@pytest.mark.asyncio
async def test_anthropic_stream_reads_content_block_deltas():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = dict(request.headers)
        seen["body"] = json.loads(request.content)
        events = [
            ("message_start", {"type": "message_start", "message": {"id": "m1"}}),
            ("content_block_start", {"type": "content_block_start", "index": 0}),
            ("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Bon"}}),
            ("ping", {"type": "ping"}),
            ("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "jour"}}),
            ("message_stop", {"type": "message_stop"}),
        ]
        body = "".join(f"event: {name}\ndata: {json.dumps(data)}\n\n" for name, data in events).encode("utf-8")
        return httpx.Response(200, stream=_ChunkedStream([body[:37], body[37:]]))

    async with _client(handler) as http:
        chunks = await _collect(
            AnthropicClient(client=http).stream_generate(
                "SYS",
                "hello",
                "claude-3-haiku-20240307",
                ProviderCredentials(base_url="https://anthropic.example.com", api_key="ak-test"),
                GenerationOptions(temperature=1.5, max_tokens=128),
            )
        )

    assert chunks == [StreamChunk("Bon"), StreamChunk("jour"), StreamChunk("", is_final=True)]
    assert seen["headers"]["x-api-key"] == "ak-test"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert seen["body"]["system"] == "SYS"
    assert seen["body"]["max_tokens"] == 128
    assert seen["body"]["temperature"] == 1.0


def test_build_provider_client_dispatches_on_enum():
    assert isinstance(build_provider_client(Provider.OLLAMA), OllamaClient)
    assert isinstance(build_provider_client(Provider.OPENAI), OpenAICompatClient)
    assert isinstance(build_provider_client(Provider.ANTHROPIC), AnthropicClient)


def test_resolve_credentials_reads_key_from_named_env_var(monkeypatch):
    monkeypatch.setenv("TEAM_OPENAI_KEY", "sk-from-env")
    resolved = ResolvedModel(
        internal_id="gpt-4o-mini",
        provider=Provider.OPENAI,
        endpoint_url="https://proxy.example.com/v1",
        api_key_ref="TEAM_OPENAI_KEY",
    )
    credentials = resolve_credentials(resolved)
    assert credentials.base_url == "https://proxy.example.com/v1"
    assert credentials.api_key == "sk-from-env"


def test_resolve_credentials_falls_back_to_settings(monkeypatch):
    from relaygate.config.settings import settings

    monkeypatch.setattr(settings, "anthropic_api_key", "ak-settings")
    monkeypatch.delenv("MISSING_KEY_REF", raising=False)
    credentials = resolve_credentials(
        ResolvedModel(internal_id="claude-3-haiku", provider=Provider.ANTHROPIC, api_key_ref="MISSING_KEY_REF")
    )
    assert credentials.base_url == settings.anthropic_base_url
    assert credentials.api_key == "ak-settings"
