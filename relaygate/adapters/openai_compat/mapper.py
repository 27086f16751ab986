"""OpenAI <-> internal model mapping."""

from __future__ import annotations

import math
import time
from typing import Any

from pydantic import ValidationError

from relaygate.config.settings import settings
from relaygate.core.errors import MalformedClientRequestError
from relaygate.core.models import ChatMessage, ChatRequest, ModelRecord
from relaygate.core.prompting import NO_MESSAGES_MESSAGE


_VALID_ROLES = frozenset({"system", "user", "assistant"})


def _flatten_part(part: object) -> str:
    if isinstance(part, dict):
        text = part.get("text")
        if isinstance(text, str):
            return text
        content = part.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return " ".join(_flatten_part(item) for item in content).strip()
        return ""
    if isinstance(part, str):
        return part
    return str(part)


def _flatten_content(content: object) -> str:
    if content is None:
        return ""
    if isinstance(content, list):
        return "".join(_flatten_part(part) for part in content)
    if isinstance(content, dict):
        return _flatten_part(content)
    return str(content)


def _to_messages(raw_messages: object) -> list[ChatMessage]:
    if not isinstance(raw_messages, list) or not raw_messages:
        raise MalformedClientRequestError(NO_MESSAGES_MESSAGE, param="messages")
    max_messages = int(settings.max_messages_count)
    if max_messages > 0 and len(raw_messages) > max_messages:
        raise MalformedClientRequestError(
            f"messages count={len(raw_messages)} exceeds max={max_messages}",
            param="messages",
        )

    messages: list[ChatMessage] = []
    for index, item in enumerate(raw_messages):
        if not isinstance(item, dict):
            raise MalformedClientRequestError(f"messages[{index}] must be an object", param="messages")
        role = str(item.get("role", "")).strip().lower()
        if role not in _VALID_ROLES:
            raise MalformedClientRequestError(
                f"messages[{index}].role must be one of system, user, assistant",
                param="messages",
            )
        messages.append(ChatMessage(role=role, content=_flatten_content(item.get("content"))))
    return messages


def to_chat_request(payload: dict[str, Any]) -> ChatRequest:
    """Validate an OpenAI chat payload; raises MalformedClientRequestError before any upstream call."""

    messages = _to_messages(payload.get("messages"))
    model = payload.get("model")
    temperature = payload.get("temperature")
    max_tokens = payload.get("max_tokens")
    try:
        return ChatRequest(
            requested_model=str(model).strip() if model else None,
            messages=messages,
            temperature=settings.default_temperature if temperature is None else temperature,
            max_tokens=settings.default_max_tokens if max_tokens is None else max_tokens,
            stream=bool(payload.get("stream", False)),
            top_p=payload.get("top_p"),
        )
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        param = ".".join(str(part) for part in first.get("loc", ())) or None
        raise MalformedClientRequestError(str(first.get("msg") or "invalid request"), param=param) from exc


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or "") / 4)


def to_chat_response(
    *,
    request_id: str,
    model: str,
    output_text: str,
    prompt_text: str,
    created: int | None = None,
) -> dict[str, Any]:
    prompt_tokens = estimate_tokens(prompt_text)
    completion_tokens = estimate_tokens(output_text)
    return {
        "id": request_id,
        "object": "chat.completion",
        "created": created if created is not None else int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": output_text},
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def model_entry(model_id: str, owned_by: str, created: int) -> dict[str, Any]:
    return {"id": model_id, "object": "model", "created": created, "owned_by": owned_by}


def record_owner(record: ModelRecord) -> str:
    return record.provider.value
