"""FastAPI app entry."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from relaygate.adapters.openai_compat.router import router as openai_router
from relaygate.adapters.plain_stream.router import router as plain_router
from relaygate.adapters.websocket.registry import WebSocketSessionRegistry
from relaygate.adapters.websocket.router import router as websocket_router
from relaygate.config.settings import settings
from relaygate.core.auth import verify_bearer
from relaygate.core.services import RelayServices, build_services
from relaygate.core.session_sweep_task import SessionSweepTask
from relaygate.providers.base import close_upstream_async_client
from relaygate.util.logger import logger


_BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
_PUBLIC_PATHS = frozenset({"/health", "/v1/health"})

_EDITOR_CAPABILITIES = ["streaming_chat", "websocket_support", "multi_model", "diff_extraction"]
_EDITOR_ENDPOINTS = {
    "health": "/v1/health",
    "chat": "/v1/chat",
    "chat_stream": "/v1/chat/stream",
    "chat_ws": "/v1/chat/ws",
    "chat_session": "/v1/chat/session",
    "models": "/v1/chat/models",
    "openai_chat": "/v1/chat/completions",
    "openai_models": "/v1/models",
}


def _blocked_response(status_code: int, reason: str, detail: str | None = None) -> JSONResponse:
    detail_text = (detail or reason).strip() or reason
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": detail_text,
                "type": "invalid_request_error" if status_code < 500 else "server_error",
                "code": reason,
                "param": None,
            }
        },
    )


async def gateway_boundary_middleware(request: Request, call_next):
    path = request.url.path
    logger.debug("boundary enter method=%s path=%s", request.method, path)

    if path in _PUBLIC_PATHS:
        return await call_next(request)

    if path.startswith("/v1/") and not verify_bearer(request.headers.get("authorization")):
        logger.warning("boundary reject unauthorized path=%s", path)
        return _blocked_response(status_code=401, reason="unauthorized", detail="missing or invalid bearer token")

    content_length_header = request.headers.get("content-length", "").strip()
    if settings.max_request_body_bytes > 0 and request.method.upper() in _BODY_METHODS and content_length_header:
        try:
            content_length = int(content_length_header)
        except ValueError:
            logger.warning("boundary reject invalid content-length path=%s", path)
            return _blocked_response(status_code=400, reason="invalid_content_length")
        if content_length > settings.max_request_body_bytes:
            logger.warning(
                "boundary reject oversize request content_length=%s max=%s path=%s",
                content_length,
                settings.max_request_body_bytes,
                path,
            )
            return _blocked_response(status_code=413, reason="request_body_too_large")

    try:
        response = await call_next(request)
    except Exception as exc:  # pragma: no cover - fail-safe
        logger.exception("gateway unhandled exception path=%s", path)
        return _blocked_response(
            status_code=500,
            reason="gateway_internal_error",
            detail=f"gateway internal error: {exc}",
        )
    logger.debug("boundary pass method=%s path=%s status=%s", request.method, path, response.status_code)
    return response


def create_app(
    services: RelayServices | None = None,
    registry: WebSocketSessionRegistry | None = None,
) -> FastAPI:
    app = FastAPI(title=settings.app_name)
    app.state.services = services if services is not None else build_services()
    app.state.ws_registry = registry if registry is not None else WebSocketSessionRegistry()
    app.state.sweep_task = None

    app.include_router(openai_router, prefix="/v1")
    app.include_router(plain_router, prefix="/v1")
    app.include_router(websocket_router, prefix="/v1")
    app.middleware("http")(gateway_boundary_middleware)

    @app.get("/health")
    def health() -> dict:
        logger.info("health check")
        return {
            "status": "ok",
            "websocket": {"active_connections": len(app.state.ws_registry)},
        }

    @app.get("/v1/health")
    def health_v1() -> dict:
        # 编辑器插件的连通性探测走这个路径
        services: RelayServices = app.state.services
        return {
            "status": "ok",
            "service": settings.app_name,
            "models": {"active": len(services.directory.active_records())},
            "websocket": {
                "enabled": True,
                "active_connections": len(app.state.ws_registry),
                "endpoint": "/v1/chat/ws",
            },
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/v1/vscode/info")
    def editor_info() -> dict:
        return {
            "service": {"name": settings.app_name, "version": settings.app_version},
            "capabilities": _EDITOR_CAPABILITIES,
            "endpoints": _EDITOR_ENDPOINTS,
            "websocket": {"active_connections": len(app.state.ws_registry)},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.on_event("startup")
    async def startup_background_tasks() -> None:
        ws_registry: WebSocketSessionRegistry = app.state.ws_registry
        await ws_registry.start()
        if app.state.sweep_task is None:
            app.state.sweep_task = SessionSweepTask(sweep_func=ws_registry.close_idle)
            await app.state.sweep_task.start()
        logger.info(
            "gateway started aliases=%d models=%d auth=%s",
            len(app.state.services.alias_table),
            len(app.state.services.directory.active_records()),
            bool(settings.api_key),
        )

    @app.on_event("shutdown")
    async def shutdown_cleanup() -> None:
        if app.state.sweep_task is not None:
            await app.state.sweep_task.stop()
            app.state.sweep_task = None
        ws_registry: WebSocketSessionRegistry = app.state.ws_registry
        closed = await ws_registry.close_all()
        if closed:
            logger.info("closed %d websocket session(s) on shutdown", closed)
        await ws_registry.stop()
        await close_upstream_async_client()

    return app


# FastAPI application instance for uvicorn.
app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run(
        "relaygate.core.gateway:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
