import asyncio

import pytest

from relaygate.core.context import RelaySession, Transport
from relaygate.core.errors import RelayProtocolError, UpstreamStreamInterruptedError, UpstreamUnavailableError
from relaygate.core.models import StreamChunk
from relaygate.core.relay import RelayEngine, RelayState, open_upstream
from relaygate.core.transcoders import DONE_SENTINEL, OpenAIChunkTranscoder, TranscodeContext
from relaygate.providers.base import ProviderCredentials
from relaygate.tests.fakes import ScriptedProvider, text_chunks


def _session() -> RelaySession:
    return RelaySession(
        session_id="relay-test",
        transport=Transport.SSE,
        original_model_alias="gpt-4",
        resolved_model_id="qwen2.5-coder:1.5b",
    )


def _engine(**kwargs) -> RelayEngine:
    return RelayEngine(_session(), OpenAIChunkTranscoder(TranscodeContext("gpt-4")), **kwargs)


def _source(provider: ScriptedProvider):
    return provider.stream_generate("sys", "user", "qwen2.5-coder:1.5b", ProviderCredentials(base_url="http://o"))


def _is_terminal(record) -> bool:
    return record == DONE_SENTINEL or (isinstance(record, dict) and "error" in record)


def _contents(records) -> list[str]:
    out = []
    for record in records:
        if isinstance(record, dict) and "choices" in record:
            content = record["choices"][0]["delta"].get("content")
            if content:
                out.append(content)
    return out


@pytest.mark.asyncio
async def test_completed_relay_emits_exactly_one_terminal_record():
    records = []

    async def sink(record):
        records.append(record)

    engine = _engine(first_byte_timeout=0)
    outcome = await engine.run(_source(ScriptedProvider(text_chunks("Hel", "lo"))), sink)

    assert outcome.state is RelayState.COMPLETED
    assert outcome.text == "Hello"
    assert outcome.chunk_count == 2
    assert _contents(records) == ["Hel", "lo"]
    assert [record for record in records if _is_terminal(record)] == [DONE_SENTINEL]
    assert records[-1] == DONE_SENTINEL
    assert records[-2]["choices"][0]["finish_reason"] == "stop"
    assert engine.terminal_emitted is True


@pytest.mark.asyncio
async def test_stream_ending_without_final_marker_emits_error_not_done():
    records = []

    async def sink(record):
        records.append(record)

    outcome = await _engine(first_byte_timeout=0).run(
        _source(ScriptedProvider(text_chunks("a", "b", "c", final=False))), sink
    )

    assert outcome.state is RelayState.FAILED
    assert isinstance(outcome.error, UpstreamStreamInterruptedError)
    assert _contents(records) == ["a", "b", "c"]
    assert DONE_SENTINEL not in records
    assert records[-1]["error"]["code"] == "upstream_stream_interrupted"
    assert sum(1 for record in records if _is_terminal(record)) == 1


@pytest.mark.asyncio
async def test_provider_exception_mid_stream_becomes_error_record():
    async def failing():
        yield StreamChunk("partial")
        raise RuntimeError("socket closed")

    records = []

    async def sink(record):
        records.append(record)

    outcome = await _engine(first_byte_timeout=0).run(failing(), sink)

    assert outcome.state is RelayState.FAILED
    assert "socket closed" in records[-1]["error"]["message"]
    assert DONE_SENTINEL not in records


@pytest.mark.asyncio
async def test_cancel_drains_without_terminal_record_and_closes_upstream():
    provider = ScriptedProvider(text_chunks("one", "two", final=False), hold_open=True)
    engine = _engine(first_byte_timeout=0)
    records = []

    async def sink(record):
        records.append(record)
        if _contents([record]):
            engine.cancel()

    outcome = await engine.run(_source(provider), sink)
    for _ in range(20):
        if provider.closed:
            break
        await asyncio.sleep(0.01)

    assert outcome.cancelled is True
    assert outcome.state is RelayState.COMPLETED
    assert not any(_is_terminal(record) for record in records)
    assert engine.terminal_emitted is False
    assert provider.closed is True


@pytest.mark.asyncio
async def test_sink_failure_is_treated_as_client_gone():
    calls = 0

    async def sink(record):
        nonlocal calls
        calls += 1
        if calls > 1:
            raise ConnectionResetError("client went away")

    engine = _engine(first_byte_timeout=0)
    outcome = await engine.run(_source(ScriptedProvider(text_chunks("x", "y", "z"))), sink)

    assert outcome.cancelled is True
    assert engine.terminal_emitted is False


@pytest.mark.asyncio
async def test_slow_sink_pauses_upstream_reads():
    provider = ScriptedProvider(text_chunks(*[f"t{i}" for i in range(20)]))
    delivered = 0
    max_ahead = 0

    async def sink(record):
        nonlocal delivered, max_ahead
        if _contents([record]):
            delivered += 1
            max_ahead = max(max_ahead, provider.pulled - delivered)
        await asyncio.sleep(0.005)

    engine = _engine(channel_size=1, first_byte_timeout=0)
    outcome = await engine.run(_source(provider), sink)

    assert outcome.state is RelayState.COMPLETED
    assert delivered == 20
    # one chunk in the channel plus one held by the producer
    assert max_ahead <= 2


@pytest.mark.asyncio
async def test_first_byte_timeout_fails_with_upstream_unavailable():
    records = []

    async def sink(record):
        records.append(record)

    provider = ScriptedProvider(text_chunks("late"), delay=0.5)
    outcome = await _engine(first_byte_timeout=0.05).run(_source(provider), sink)

    assert outcome.state is RelayState.FAILED
    assert isinstance(outcome.error, UpstreamUnavailableError)
    assert records == [
        {
            "error": {
                "message": "upstream unreachable: no response within 0.05s",
                "type": "server_error",
                "code": "upstream_unavailable",
            }
        }
    ]


@pytest.mark.asyncio
async def test_first_byte_timeout_does_not_apply_after_first_chunk():
    provider = ScriptedProvider(text_chunks("a", "b"), delay=0.03)
    records = []

    async def sink(record):
        records.append(record)

    outcome = await _engine(first_byte_timeout=0.2).run(_source(provider), sink)
    assert outcome.state is RelayState.COMPLETED
    assert records[-1] == DONE_SENTINEL


@pytest.mark.asyncio
async def test_engine_cannot_run_twice():
    async def sink(record):
        return None

    engine = _engine(first_byte_timeout=0)
    await engine.run(_source(ScriptedProvider(text_chunks("a"))), sink)
    with pytest.raises(RelayProtocolError):
        await engine.run(_source(ScriptedProvider(text_chunks("a"))), sink)


@pytest.mark.asyncio
async def test_open_upstream_surfaces_open_error():
    provider = ScriptedProvider(open_error=UpstreamUnavailableError(404, "model not found"))
    with pytest.raises(UpstreamUnavailableError) as exc_info:
        await open_upstream(_source(provider))
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_open_upstream_timeout_closes_source():
    provider = ScriptedProvider(text_chunks("late"), delay=0.5)
    with pytest.raises(UpstreamUnavailableError):
        await open_upstream(_source(provider), first_byte_timeout=0.05)
    assert provider.closed is True


@pytest.mark.asyncio
async def test_open_upstream_replays_first_chunk():
    provider = ScriptedProvider(text_chunks("a", "b"))
    primed = await open_upstream(_source(provider))
    assert provider.pulled == 1
    assert [chunk async for chunk in primed] == text_chunks("a", "b")


@pytest.mark.asyncio
async def test_open_upstream_on_empty_stream_relays_interruption():
    records = []

    async def sink(record):
        records.append(record)

    primed = await open_upstream(_source(ScriptedProvider([])))
    outcome = await _engine(first_byte_timeout=0).run(primed, sink)
    assert outcome.state is RelayState.FAILED
    assert records[-1]["error"]["code"] == "upstream_stream_interrupted"
