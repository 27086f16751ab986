"""OpenAI-compatible routes."""

from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse

from relaygate.adapters.openai_compat.mapper import (
    model_entry,
    record_owner,
    to_chat_request,
    to_chat_response,
)
from relaygate.adapters.openai_compat.stream_utils import _build_streaming_response, stream_relay_sse
from relaygate.config.settings import settings
from relaygate.core.context import RelaySession, Transport, new_session_id
from relaygate.core.errors import RelayGateError
from relaygate.core.models import ChatRequest
from relaygate.core.prompting import split_messages
from relaygate.core.relay import RelayEngine, open_upstream
from relaygate.core.services import RelayServices, get_services
from relaygate.core.transcoders import OpenAIChunkTranscoder, TranscodeContext, new_completion_id
from relaygate.observability.logging import log_request_if_debug
from relaygate.providers.base import GenerationOptions
from relaygate.util.logger import logger


router = APIRouter()


def _error_response(exc: RelayGateError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content=exc.to_payload())


def _generation_options(chat: ChatRequest) -> GenerationOptions:
    return GenerationOptions(temperature=chat.temperature, max_tokens=chat.max_tokens, top_p=chat.top_p)


async def _stream_chat_completion(services: RelayServices, chat: ChatRequest) -> StreamingResponse | JSONResponse:
    system_prompt, user_prompt = split_messages(chat.messages)
    resolved = services.resolver.resolve(chat, services.directory)
    alias = chat.requested_model or resolved.internal_id
    call = services.upstream_call(resolved, _generation_options(chat))

    try:
        source = await open_upstream(
            call.stream(system_prompt, user_prompt),
            settings.upstream_first_byte_timeout_seconds,
        )
    except RelayGateError as exc:
        logger.warning("chat stream upstream open failed model=%s error=%s", resolved.internal_id, exc)
        return _error_response(exc)

    session = RelaySession(
        session_id=new_session_id("sse"),
        transport=Transport.SSE,
        original_model_alias=alias,
        resolved_model_id=resolved.internal_id,
    )
    engine = RelayEngine(session, OpenAIChunkTranscoder(TranscodeContext(original_model_alias=alias)), first_byte_timeout=0)
    logger.info(
        "chat stream start session_id=%s alias=%s model=%s provider=%s",
        session.session_id,
        alias,
        resolved.internal_id,
        resolved.provider.value,
    )
    return _build_streaming_response(stream_relay_sse(engine, source))


async def _complete_chat(services: RelayServices, chat: ChatRequest) -> JSONResponse:
    system_prompt, user_prompt = split_messages(chat.messages)
    resolved = services.resolver.resolve(chat, services.directory)
    alias = chat.requested_model or resolved.internal_id
    call = services.upstream_call(resolved, _generation_options(chat))

    try:
        output_text = await call.generate(system_prompt, user_prompt)
    except RelayGateError as exc:
        logger.warning("chat completion upstream failed model=%s error=%s", resolved.internal_id, exc)
        return _error_response(exc)

    logger.info(
        "chat completion done alias=%s model=%s chars=%d",
        alias,
        resolved.internal_id,
        len(output_text),
    )
    return JSONResponse(
        content=to_chat_response(
            request_id=new_completion_id(),
            model=alias,
            output_text=output_text,
            prompt_text=f"{system_prompt}\n{user_prompt}",
        )
    )


@router.post("/chat/completions")
async def chat_completions(payload: dict, request: Request):
    log_request_if_debug(request.method, request.url.path, request.headers, payload, "/v1/chat/completions")
    services = get_services(request)
    try:
        chat = to_chat_request(payload)
        if chat.stream:
            return await _stream_chat_completion(services, chat)
        return await _complete_chat(services, chat)
    except RelayGateError as exc:
        logger.info("chat completion rejected code=%s error=%s", exc.code, exc)
        return _error_response(exc)


@router.get("/models")
async def list_models(request: Request) -> dict[str, Any]:
    services = get_services(request)
    now = int(time.time())
    data = [model_entry(item.id, item.owned_by, now) for item in services.alias_table.advertised_models()]
    seen = {item["id"] for item in data}
    for record in services.directory.active_records():
        if record.internal_model_id in seen:
            continue
        seen.add(record.internal_model_id)
        data.append(model_entry(record.internal_model_id, record_owner(record), record.created_at or now))
    return {"object": "list", "data": data}
