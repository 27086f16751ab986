import json

import pytest
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient
from starlette.requests import Request

from relaygate.config.settings import settings
from relaygate.core import gateway
from relaygate.core.auth import extract_bearer, verify_bearer
from relaygate.tests.fakes import ScriptedProvider, make_services


def _build_request(
    path: str,
    *,
    method: str = "POST",
    headers: dict[str, str] | None = None,
    body: dict | None = None,
) -> Request:
    payload = json.dumps(body or {}).encode("utf-8")
    raw_headers = [(b"content-type", b"application/json")]
    for k, v in (headers or {}).items():
        raw_headers.append((k.lower().encode("latin-1"), v.encode("latin-1")))
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode("latin-1"),
        "query_string": b"",
        "headers": raw_headers,
        "client": ("127.0.0.1", 50000),
        "server": ("127.0.0.1", 8001),
    }

    sent = False

    async def receive() -> dict:
        nonlocal sent
        if sent:
            return {"type": "http.request", "body": b"", "more_body": False}
        sent = True
        return {"type": "http.request", "body": payload, "more_body": False}

    return Request(scope, receive)


async def _allow_next(_request: Request):
    return JSONResponse(status_code=200, content={"ok": True})


@pytest.mark.asyncio
async def test_boundary_passes_when_auth_disabled(monkeypatch):
    monkeypatch.setattr(settings, "api_key", "")
    request = _build_request("/v1/chat/completions", body={"messages": []})
    response = await gateway.gateway_boundary_middleware(request, _allow_next)
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_boundary_rejects_missing_bearer(monkeypatch):
    monkeypatch.setattr(settings, "api_key", "secret")
    request = _build_request("/v1/chat/completions")
    response = await gateway.gateway_boundary_middleware(request, _allow_next)
    assert response.status_code == 401
    body = json.loads(response.body.decode("utf-8"))
    assert body["error"]["code"] == "unauthorized"


@pytest.mark.asyncio
async def test_boundary_accepts_matching_bearer(monkeypatch):
    monkeypatch.setattr(settings, "api_key", "secret")
    request = _build_request("/v1/models", method="GET", headers={"Authorization": "Bearer secret"})
    response = await gateway.gateway_boundary_middleware(request, _allow_next)
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_health_bypasses_auth(monkeypatch):
    monkeypatch.setattr(settings, "api_key", "secret")
    request = _build_request("/health", method="GET")
    response = await gateway.gateway_boundary_middleware(request, _allow_next)
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_boundary_rejects_oversize_body(monkeypatch):
    monkeypatch.setattr(settings, "api_key", "")
    monkeypatch.setattr(settings, "max_request_body_bytes", 16)
    request = _build_request("/v1/chat/completions", headers={"Content-Length": "1024"})
    response = await gateway.gateway_boundary_middleware(request, _allow_next)
    assert response.status_code == 413
    assert json.loads(response.body.decode("utf-8"))["error"]["code"] == "request_body_too_large"


@pytest.mark.asyncio
async def test_boundary_rejects_invalid_content_length(monkeypatch):
    monkeypatch.setattr(settings, "api_key", "")
    request = _build_request("/v1/chat/completions", headers={"Content-Length": "abc"})
    response = await gateway.gateway_boundary_middleware(request, _allow_next)
    assert response.status_code == 400


def test_extract_and_verify_bearer(monkeypatch):
    assert extract_bearer("Bearer  abc ") == "abc"
    assert extract_bearer("Basic abc") == ""
    monkeypatch.setattr(settings, "api_key", "abc")
    assert verify_bearer("bearer abc") is True
    assert verify_bearer("Bearer nope") is False
    assert verify_bearer(None, query_token="abc") is True
    assert verify_bearer(None) is False


def test_health_endpoint_through_app(monkeypatch):
    monkeypatch.setattr(settings, "api_key", "secret")
    client = TestClient(gateway.create_app(make_services(ScriptedProvider())))

    health = client.get("/health")
    assert health.status_code == 200
    assert health.json() == {"status": "ok", "websocket": {"active_connections": 0}}

    assert client.get("/v1/models").status_code == 401
    assert client.get("/v1/models", headers={"Authorization": "Bearer secret"}).status_code == 200


def test_versioned_health_is_public_and_editor_info_is_not(monkeypatch):
    monkeypatch.setattr(settings, "api_key", "secret")
    client = TestClient(gateway.create_app(make_services(ScriptedProvider())))

    health = client.get("/v1/health")
    assert health.status_code == 200
    body = health.json()
    assert body["status"] == "ok"
    assert body["models"] == {"active": 2}
    assert body["websocket"]["endpoint"] == "/v1/chat/ws"

    assert client.get("/v1/vscode/info").status_code == 401
    info = client.get("/v1/vscode/info", headers={"Authorization": "Bearer secret"})
    assert info.status_code == 200
    assert info.json()["endpoints"]["chat_stream"] == "/v1/chat/stream"
    assert "streaming_chat" in info.json()["capabilities"]


def test_app_registers_every_route():
    paths = {route.path for route in gateway.create_app(make_services(ScriptedProvider())).routes}
    assert {
        "/health",
        "/v1/health",
        "/v1/vscode/info",
        "/v1/chat/completions",
        "/v1/models",
        "/v1/chat/stream",
        "/v1/chat",
        "/v1/chat/session",
        "/v1/chat/models",
        "/v1/chat/ws",
    } <= paths
