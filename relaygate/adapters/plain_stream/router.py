"""
编辑器插件使用的简化协议：``{prompt, context, model}`` 入参，
``{type: token|diff|done|error}`` SSE 事件出参。
"""

from __future__ import annotations

from datetime import datetime, timezone
from functools import partial
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from relaygate.adapters.openai_compat.stream_utils import _build_streaming_response, stream_relay_sse
from relaygate.config.settings import settings
from relaygate.core.context import RelaySession, Transport, new_session_id
from relaygate.core.diffs import extract_diffs
from relaygate.core.errors import MalformedClientRequestError, RelayGateError
from relaygate.core.models import Provider
from relaygate.core.prompting import build_editor_system_prompt, editor_context_from_headers
from relaygate.core.relay import RelayEngine, open_upstream
from relaygate.core.services import get_services
from relaygate.core.transcoders import PlainTokenTranscoder
from relaygate.observability.logging import log_event, log_request_if_debug
from relaygate.providers.base import GenerationOptions, ProviderCredentials
from relaygate.util.logger import logger


router = APIRouter()


def _error_response(exc: RelayGateError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content=exc.to_payload())


def _prompt_of(payload: dict[str, Any]) -> str:
    prompt = payload.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise MalformedClientRequestError("Prompt is required", param="prompt")
    return prompt


def _model_of(payload: dict[str, Any]) -> str | None:
    model = payload.get("model")
    if model is None:
        return None
    if not isinstance(model, str):
        raise MalformedClientRequestError("model must be a string", param="model")
    return model.strip() or None


def _context_of(payload: dict[str, Any]) -> dict[str, Any] | None:
    context = payload.get("context")
    return context if isinstance(context, dict) else None


def _default_options() -> GenerationOptions:
    return GenerationOptions(temperature=settings.default_temperature, max_tokens=settings.default_max_tokens)


@router.post("/chat/stream")
async def chat_stream(payload: dict, request: Request):
    log_request_if_debug(request.method, request.url.path, request.headers, payload, "/v1/chat/stream")
    services = get_services(request)
    try:
        prompt = _prompt_of(payload)
        context = _context_of(payload)
        editor = editor_context_from_headers(request.headers)
        requested_model = _model_of(payload)
        resolved = services.resolver.resolve_model_id(requested_model, services.directory)
        call = services.upstream_call(resolved, _default_options())
        source = await open_upstream(
            call.stream(build_editor_system_prompt(context, editor), prompt),
            settings.upstream_first_byte_timeout_seconds,
        )
    except RelayGateError as exc:
        logger.info("plain chat stream rejected code=%s error=%s", exc.code, exc)
        return _error_response(exc)

    diff_extractor = partial(extract_diffs, context=context) if settings.enable_diff_extraction else None
    session = RelaySession(
        session_id=new_session_id("plain"),
        transport=Transport.SSE,
        original_model_alias=requested_model or resolved.internal_id,
        resolved_model_id=resolved.internal_id,
    )
    engine = RelayEngine(session, PlainTokenTranscoder(diff_extractor), first_byte_timeout=0)
    logger.info(
        "plain chat stream start session_id=%s model=%s editor_session=%s",
        session.session_id,
        resolved.internal_id,
        editor.session_id if editor else None,
    )
    return _build_streaming_response(stream_relay_sse(engine, source))


@router.post("/chat")
async def chat(payload: dict, request: Request):
    log_request_if_debug(request.method, request.url.path, request.headers, payload, "/v1/chat")
    services = get_services(request)
    try:
        prompt = _prompt_of(payload)
        context = _context_of(payload)
        editor = editor_context_from_headers(request.headers)
        requested_model = _model_of(payload)
        resolved = services.resolver.resolve_model_id(requested_model, services.directory)
        call = services.upstream_call(resolved, _default_options())
        response_text = await call.generate(build_editor_system_prompt(context, editor), prompt)
    except RelayGateError as exc:
        logger.info("plain chat rejected code=%s error=%s", exc.code, exc)
        return _error_response(exc)

    diffs = extract_diffs(response_text, context) if settings.enable_diff_extraction else []
    logger.info("plain chat done model=%s chars=%d diffs=%d", resolved.internal_id, len(response_text), len(diffs))
    return JSONResponse(
        content={
            "response": response_text,
            "diffs": diffs,
            "model": requested_model or resolved.internal_id,
            "metadata": {
                "editor": editor is not None,
                "sessionId": editor.session_id if editor else None,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        }
    )


@router.post("/chat/session")
async def chat_session(payload: dict, request: Request):
    editor = editor_context_from_headers(request.headers)
    if editor is None:
        return _error_response(MalformedClientRequestError("Editor context required"))

    action = payload.get("action")
    if action == "start":
        log_event(
            "editor_session_started",
            session_id=editor.session_id,
            editor_version=editor.editor_version,
            workspace_root=editor.workspace_root,
        )
    elif action == "end":
        log_event("editor_session_ended", session_id=editor.session_id)
    return {"success": True, "sessionId": editor.session_id, "action": action}


@router.get("/chat/models")
async def chat_models(request: Request) -> dict[str, Any]:
    services = get_services(request)
    ollama_models: list[str] = []
    try:
        client = services.provider_factory(Provider.OLLAMA)
        ollama_models = await client.list_models(ProviderCredentials(base_url=settings.ollama_base_url))
    except RelayGateError as exc:
        logger.warning("ollama model listing failed: %s", exc)

    return {
        "configured": [
            {
                "id": record.id,
                "displayName": record.display_name,
                "provider": record.provider.value,
                "modelId": record.internal_model_id,
                "isDefault": record.is_default,
                "isActive": record.is_active,
            }
            for record in services.directory.records()
        ],
        "ollama": [{"name": name, "provider": Provider.OLLAMA.value, "available": True} for name in ollama_models],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
