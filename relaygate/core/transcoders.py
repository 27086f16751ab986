"""
Output encoders that shape the normalized token stream into one wire protocol each.

Every encoder exposes ``start / encode / finish / fail`` and returns a list of
records; a record is a JSON-able dict or the raw ``[DONE]`` sentinel string.
Instances are per session and never shared.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Union

from relaygate.core.errors import RelayGateError
from relaygate.core.models import StreamChunk


Record = Union[dict[str, Any], str]

DONE_SENTINEL = "[DONE]"


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex[:24]}"


@dataclass(frozen=True, slots=True)
class TranscodeContext:
    original_model_alias: str
    request_id: str = field(default_factory=new_completion_id)
    created: int = field(default_factory=lambda: int(time.time()))


class Transcoder(Protocol):
    def start(self) -> list[Record]: ...

    def encode(self, chunk: StreamChunk) -> list[Record]: ...

    def finish(self) -> list[Record]: ...

    def fail(self, error: BaseException | str) -> list[Record]: ...


def _error_code(error: BaseException | str) -> str:
    if isinstance(error, RelayGateError):
        return error.code
    return "streaming_error"


def _error_message(error: BaseException | str) -> str:
    text = str(error).strip()
    return text or "Streaming failed"


class OpenAIChunkTranscoder:
    """``chat.completion.chunk`` objects, terminated by the ``[DONE]`` sentinel."""

    def __init__(self, context: TranscodeContext) -> None:
        self.context = context

    def _chunk(self, delta: dict[str, Any], finish_reason: str | None = None) -> dict[str, Any]:
        return {
            "id": self.context.request_id,
            "object": "chat.completion.chunk",
            "created": self.context.created,
            "model": self.context.original_model_alias,
            "choices": [
                {
                    "index": 0,
                    "delta": delta,
                    "finish_reason": finish_reason,
                }
            ],
        }

    def start(self) -> list[Record]:
        return [self._chunk({"role": "assistant", "content": ""})]

    def encode(self, chunk: StreamChunk) -> list[Record]:
        if not chunk.text:
            return []
        return [self._chunk({"content": chunk.text})]

    def finish(self) -> list[Record]:
        return [self._chunk({}, finish_reason="stop"), DONE_SENTINEL]

    def fail(self, error: BaseException | str) -> list[Record]:
        return [
            {
                "error": {
                    "message": _error_message(error),
                    "type": "server_error",
                    "code": _error_code(error),
                }
            }
        ]


class PlainTokenTranscoder:
    """``{type, content}`` events used by the editor's own SSE protocol."""

    def __init__(self, diff_extractor: Callable[[str], list[dict[str, Any]]] | None = None) -> None:
        self._diff_extractor = diff_extractor
        self._parts: list[str] = []

    def start(self) -> list[Record]:
        return []

    def encode(self, chunk: StreamChunk) -> list[Record]:
        if not chunk.text:
            return []
        if self._diff_extractor is not None:
            self._parts.append(chunk.text)
        return [{"type": "token", "content": chunk.text}]

    def finish(self) -> list[Record]:
        records: list[Record] = []
        if self._diff_extractor is not None and self._parts:
            records.extend({"type": "diff", "diff": diff} for diff in self._diff_extractor("".join(self._parts)))
        records.append({"type": "done"})
        return records

    def fail(self, error: BaseException | str) -> list[Record]:
        return [{"type": "error", "error": _error_message(error)}]


class WebSocketChatTranscoder:
    """``chat_*`` frames tagged with the originating socket message id."""

    def __init__(self, message_id: str | None, original_model_alias: str) -> None:
        self.message_id = message_id
        self.original_model_alias = original_model_alias
        self._parts: list[str] = []

    def _frame(self, frame_type: str, data: dict[str, Any]) -> dict[str, Any]:
        return {"type": frame_type, "id": self.message_id, "data": data}

    def start(self) -> list[Record]:
        return [self._frame("chat_start", {"model": self.original_model_alias})]

    def encode(self, chunk: StreamChunk) -> list[Record]:
        if not chunk.text:
            return []
        self._parts.append(chunk.text)
        return [self._frame("chat_chunk", {"content": chunk.text, "model": self.original_model_alias})]

    def finish(self) -> list[Record]:
        full_response = "".join(self._parts)
        return [
            self._frame(
                "chat_complete",
                {
                    "fullResponse": full_response,
                    "model": self.original_model_alias,
                    "responseLength": len(full_response),
                },
            )
        ]

    def fail(self, error: BaseException | str) -> list[Record]:
        return [self._frame("chat_error", {"error": _error_message(error), "code": _error_code(error)})]
