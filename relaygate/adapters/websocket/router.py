"""WebSocket chat endpoint: one socket, many concurrent relays keyed by message id."""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from relaygate.adapters.websocket.registry import WebSocketConnection, WebSocketSessionRegistry
from relaygate.config.settings import settings
from relaygate.core.auth import verify_bearer
from relaygate.core.context import RelaySession, Transport, new_session_id
from relaygate.core.errors import RelayGateError, RelayProtocolError
from relaygate.core.prompting import build_editor_system_prompt
from relaygate.core.relay import RelayEngine
from relaygate.core.services import RelayServices, UpstreamCall, get_services
from relaygate.core.transcoders import WebSocketChatTranscoder
from relaygate.observability.logging import log_event
from relaygate.providers.base import GenerationOptions
from relaygate.util.logger import logger


router = APIRouter()

POLICY_VIOLATION_CODE = 1008

_CAPABILITIES = ["streaming_chat", "model_switching", "real_time_updates", "editor_integration"]


def get_registry(websocket: WebSocket) -> WebSocketSessionRegistry:
    return websocket.app.state.ws_registry


def _now_ms() -> int:
    return int(time.time() * 1000)


async def _safe_send(connection: WebSocketConnection, frame: dict[str, Any]) -> None:
    try:
        await connection.send_json(frame)
    except Exception as exc:
        logger.info("websocket send failed connection_id=%s type=%s error=%s", connection.id, frame.get("type"), exc)


async def _run_relay(
    connection: WebSocketConnection,
    engine: RelayEngine,
    call: UpstreamCall,
    system_prompt: str,
    prompt: str,
) -> None:
    try:
        await engine.run(call.stream(system_prompt, prompt), connection.send_json)
    except RelayProtocolError:
        logger.exception("websocket relay protocol violation session_id=%s", engine.session.session_id)


async def _handle_chat(connection: WebSocketConnection, services: RelayServices, message: dict[str, Any]) -> None:
    message_id = message.get("id")
    data = message.get("data") if isinstance(message.get("data"), dict) else {}
    prompt = data.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        await _safe_send(connection, {"type": "error", "id": message_id, "data": {"error": "Prompt is required"}})
        return

    model = data.get("model")
    if model is not None and not isinstance(model, str):
        await _safe_send(
            connection,
            {"type": "error", "id": message_id, "data": {"error": "model must be a string", "param": "model"}},
        )
        return

    requested_model = (model or "").strip() or connection.preferred_model
    try:
        resolved = services.resolver.resolve_model_id(requested_model, services.directory)
    except RelayGateError as exc:
        await _safe_send(
            connection,
            {"type": "chat_error", "id": message_id, "data": {"error": str(exc), "code": exc.code}},
        )
        return

    alias = requested_model or resolved.internal_id
    context = data.get("context") if isinstance(data.get("context"), dict) else None
    system_prompt = build_editor_system_prompt(context, connection.editor_context(), transport="websocket")
    call = services.upstream_call(
        resolved,
        GenerationOptions(temperature=settings.default_temperature, max_tokens=settings.default_max_tokens),
    )
    session = RelaySession(
        session_id=new_session_id(f"{connection.id}:{message_id}"),
        transport=Transport.WEBSOCKET,
        original_model_alias=alias,
        resolved_model_id=resolved.internal_id,
    )
    engine = RelayEngine(session, WebSocketChatTranscoder(message_id, alias))
    task = asyncio.create_task(
        _run_relay(connection, engine, call, system_prompt, prompt),
        name=f"relay-ws-{session.session_id}",
    )
    connection.track(engine, task)
    logger.info(
        "websocket chat start connection_id=%s message_id=%s model=%s prompt_chars=%d",
        connection.id,
        message_id,
        resolved.internal_id,
        len(prompt),
    )


async def _handle_session(connection: WebSocketConnection, message: dict[str, Any]) -> None:
    message_id = message.get("id")
    data = message.get("data") if isinstance(message.get("data"), dict) else {}
    action = data.get("action")
    if action == "update_context":
        updates = data.get("data") if isinstance(data.get("data"), dict) else {}
        if updates.get("vscodeVersion"):
            connection.editor_version = str(updates["vscodeVersion"])
        if updates.get("workspaceRoot"):
            connection.workspace_root = str(updates["workspaceRoot"])
        await _safe_send(
            connection,
            {
                "type": "session_updated",
                "id": message_id,
                "data": {"sessionId": connection.session_id, "updated": True},
            },
        )
        return
    if action == "get_info":
        await _safe_send(
            connection,
            {
                "type": "session_info",
                "id": message_id,
                "data": {
                    "sessionId": connection.session_id,
                    "vscodeVersion": connection.editor_version,
                    "workspaceRoot": connection.workspace_root,
                    "preferredModel": connection.preferred_model,
                    "lastActivity": int(connection.last_activity * 1000),
                    "uptime": int((time.time() - connection.connected_at) * 1000),
                },
            },
        )
        return
    await _safe_send(
        connection,
        {"type": "error", "id": message_id, "data": {"error": "Unknown session action", "action": action}},
    )


async def _handle_model_switch(connection: WebSocketConnection, services: RelayServices, message: dict[str, Any]) -> None:
    message_id = message.get("id")
    data = message.get("data") if isinstance(message.get("data"), dict) else {}
    model_id = data.get("modelId")
    if not model_id:
        await _safe_send(
            connection,
            {"type": "model_switch_error", "id": message_id, "data": {"error": "Model ID is required"}},
        )
        return

    available = [record.internal_model_id for record in services.directory.active_records()]
    if services.alias_table.resolve(str(model_id)) not in available:
        await _safe_send(
            connection,
            {
                "type": "model_switch_error",
                "id": message_id,
                "data": {"error": "Model not available", "availableModels": available},
            },
        )
        return

    previous = connection.preferred_model
    connection.preferred_model = str(model_id)
    logger.info(
        "websocket model switched connection_id=%s model=%s previous=%s",
        connection.id,
        model_id,
        previous,
    )
    await _safe_send(
        connection,
        {"type": "model_switched", "id": message_id, "data": {"modelId": model_id, "success": True}},
    )


async def _dispatch(connection: WebSocketConnection, services: RelayServices, message: dict[str, Any]) -> None:
    message_type = message.get("type")
    if message_type == "ping":
        await _safe_send(connection, {"type": "pong", "id": message.get("id"), "data": {"timestamp": _now_ms()}})
    elif message_type == "chat":
        await _handle_chat(connection, services, message)
    elif message_type == "session":
        await _handle_session(connection, message)
    elif message_type == "model_switch":
        await _handle_model_switch(connection, services, message)
    else:
        await _safe_send(
            connection,
            {"type": "error", "id": message.get("id"), "data": {"error": "Unknown message type", "type": message_type}},
        )


@router.websocket("/chat/ws")
async def chat_ws(websocket: WebSocket) -> None:
    if not verify_bearer(websocket.headers.get("authorization"), websocket.query_params.get("token")):
        logger.warning("websocket auth rejected client=%s", websocket.client.host if websocket.client else "")
        await websocket.close(code=POLICY_VIOLATION_CODE)
        return

    services = get_services(websocket)
    registry = get_registry(websocket)
    await websocket.accept()

    connection = WebSocketConnection(
        websocket,
        websocket.headers.get("x-session-id") or websocket.query_params.get("sessionId") or None,
        editor_version=websocket.headers.get("x-vs-code-version"),
        workspace_root=websocket.headers.get("x-workspace-root"),
    )
    total = await registry.register(connection)
    log_event("ws_connected", connection_id=connection.id, session_id=connection.session_id, total=total)
    await _safe_send(
        connection,
        {
            "type": "session",
            "data": {
                "sessionId": connection.session_id,
                "status": "connected",
                "server": settings.app_name,
                "capabilities": _CAPABILITIES,
            },
        },
    )

    try:
        while not connection.closed:
            raw = await websocket.receive_text()
            await registry.touch(connection.id)
            try:
                message = json.loads(raw)
                if not isinstance(message, dict):
                    raise ValueError("message must be a JSON object")
            except ValueError as exc:
                await _safe_send(
                    connection,
                    {"type": "error", "data": {"error": "Failed to process message", "details": str(exc)}},
                )
                continue
            logger.debug(
                "websocket message connection_id=%s type=%s id=%s",
                connection.id,
                message.get("type"),
                message.get("id"),
            )
            await _dispatch(connection, services, message)
    except WebSocketDisconnect as exc:
        logger.info("websocket disconnected connection_id=%s code=%s", connection.id, exc.code)
    except RuntimeError as exc:
        # 服务端已主动关闭（空闲回收 / 停机）后再读会抛 RuntimeError
        if not connection.closed:
            raise
        logger.debug("websocket receive after close connection_id=%s error=%s", connection.id, exc)
    finally:
        connection.closed = True
        cancelled = connection.cancel_relays()
        await registry.unregister(connection.id)
        log_event("ws_disconnected", connection_id=connection.id, cancelled_relays=cancelled)
