from relaygate.adapters.openai_compat.stream_utils import sse_frame
from relaygate.core.errors import UpstreamStreamInterruptedError
from relaygate.core.models import StreamChunk
from relaygate.core.transcoders import (
    DONE_SENTINEL,
    OpenAIChunkTranscoder,
    PlainTokenTranscoder,
    TranscodeContext,
    WebSocketChatTranscoder,
)


def test_openai_chunks_always_carry_the_requested_alias():
    transcoder = OpenAIChunkTranscoder(TranscodeContext("gpt-4", request_id="chatcmpl-1", created=1700000000))
    records = transcoder.start() + transcoder.encode(StreamChunk("hi")) + transcoder.finish()

    chunks = [record for record in records if isinstance(record, dict)]
    assert {chunk["model"] for chunk in chunks} == {"gpt-4"}
    assert {chunk["id"] for chunk in chunks} == {"chatcmpl-1"}
    assert chunks[0]["choices"][0]["delta"] == {"role": "assistant", "content": ""}
    assert chunks[1]["choices"][0]["delta"] == {"content": "hi"}
    assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
    assert records[-1] == DONE_SENTINEL


def test_openai_empty_chunk_produces_no_record():
    transcoder = OpenAIChunkTranscoder(TranscodeContext("gpt-4"))
    assert transcoder.encode(StreamChunk("")) == []


def test_openai_fail_record_uses_error_code():
    record = OpenAIChunkTranscoder(TranscodeContext("gpt-4")).fail(UpstreamStreamInterruptedError())
    assert record == [
        {
            "error": {
                "message": "upstream stream interrupted before completion",
                "type": "server_error",
                "code": "upstream_stream_interrupted",
            }
        }
    ]


def test_plain_transcoder_emits_diffs_before_done():
    seen = []

    def extractor(text):
        seen.append(text)
        return [{"id": "d1", "filePath": "a.py", "patch": "...", "description": "Update a.py"}]

    transcoder = PlainTokenTranscoder(extractor)
    records = transcoder.encode(StreamChunk("x = ")) + transcoder.encode(StreamChunk("1")) + transcoder.finish()

    assert [record["type"] for record in records] == ["token", "token", "diff", "done"]
    assert records[2]["diff"]["filePath"] == "a.py"
    assert seen == ["x = 1"]


def test_plain_transcoder_without_extractor_and_error_shape():
    transcoder = PlainTokenTranscoder()
    assert transcoder.start() == []
    assert transcoder.finish() == [{"type": "done"}]
    assert transcoder.fail("") == [{"type": "error", "error": "Streaming failed"}]


def test_websocket_frames_are_tagged_with_message_id():
    transcoder = WebSocketChatTranscoder("msg-7", "gpt-4")
    records = (
        transcoder.start()
        + transcoder.encode(StreamChunk("Hel"))
        + transcoder.encode(StreamChunk("lo"))
        + transcoder.finish()
    )

    assert [record["type"] for record in records] == ["chat_start", "chat_chunk", "chat_chunk", "chat_complete"]
    assert {record["id"] for record in records} == {"msg-7"}
    assert records[-1]["data"] == {"fullResponse": "Hello", "model": "gpt-4", "responseLength": 5}


def test_websocket_error_frame_carries_code():
    frame = WebSocketChatTranscoder("m1", "gpt-4").fail(RuntimeError("boom"))[0]
    assert frame == {"type": "chat_error", "id": "m1", "data": {"error": "boom", "code": "streaming_error"}}


def test_sse_frame_encoding():
    assert sse_frame(DONE_SENTINEL) == b"data: [DONE]\n\n"
    assert sse_frame({"type": "token", "content": "é"}) == 'data: {"type": "token", "content": "é"}\n\n'.encode("utf-8")
