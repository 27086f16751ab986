"""
WebSocket 连接登记表。

所有增删改都经由一个命令队列交给唯一的 owner task 执行；
读取连接数等只读操作可直接访问快照。
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any

from starlette.websockets import WebSocket

from relaygate.config.settings import settings
from relaygate.core.prompting import EditorContext
from relaygate.core.relay import RelayEngine
from relaygate.observability.logging import log_event
from relaygate.util.logger import logger


SESSION_TIMEOUT_CODE = 1000
SESSION_TIMEOUT_REASON = "Session timeout"
SERVER_SHUTDOWN_CODE = 1001
SERVER_SHUTDOWN_REASON = "Server shutdown"


class ConnectionClosedError(RuntimeError):
    pass


class WebSocketConnection:
    """One accepted socket plus the relays it currently owns."""

    def __init__(
        self,
        websocket: WebSocket,
        editor_session_id: str | None = None,
        *,
        editor_version: str | None = None,
        workspace_root: str | None = None,
    ) -> None:
        self.websocket = websocket
        # 登记表主键始终由服务端生成；编辑器自带的 session id 可能重复
        self.id = f"ws-{uuid.uuid4().hex[:16]}"
        self.editor_session_id = editor_session_id
        self.editor_version = editor_version
        self.workspace_root = workspace_root
        self.preferred_model: str | None = None
        self.connected_at = time.time()
        self.last_activity = self.connected_at
        self.closed = False
        self.relays: dict[str, tuple[RelayEngine, asyncio.Task]] = {}
        self._send_lock = asyncio.Lock()

    @property
    def session_id(self) -> str:
        """Id reported to the client: the editor's own session id when it sent one."""
        return self.editor_session_id or self.id

    @property
    def busy(self) -> bool:
        return any(not task.done() for _engine, task in self.relays.values())

    def editor_context(self) -> EditorContext:
        return EditorContext(
            session_id=self.session_id,
            editor_version=self.editor_version,
            workspace_root=self.workspace_root,
        )

    async def send_json(self, frame: dict[str, Any]) -> None:
        # 同一连接上并发的多个 relay 按帧串行写出
        async with self._send_lock:
            if self.closed:
                raise ConnectionClosedError(f"websocket closed connection_id={self.id}")
            await self.websocket.send_json(frame)

    def track(self, engine: RelayEngine, task: asyncio.Task) -> None:
        key = engine.session.session_id
        self.relays[key] = (engine, task)

        def _finished(_task: asyncio.Task) -> None:
            self.relays.pop(key, None)
            # 空闲计时从最后一个 relay 结束时重新开始
            self.last_activity = time.time()

        task.add_done_callback(_finished)

    def cancel_relays(self) -> int:
        cancelled = 0
        for engine, task in list(self.relays.values()):
            engine.cancel()
            if not task.done():
                task.cancel()
                cancelled += 1
        return cancelled

    async def close(self, code: int, reason: str) -> None:
        self.cancel_relays()
        async with self._send_lock:
            if self.closed:
                return
            self.closed = True
            try:
                await self.websocket.close(code=code, reason=reason)
            except RuntimeError as exc:
                logger.debug("websocket already closed connection_id=%s error=%s", self.id, exc)


class WebSocketSessionRegistry:
    """Single-writer table of live connections."""

    def __init__(self, idle_timeout_seconds: float | None = None) -> None:
        if idle_timeout_seconds is None:
            idle_timeout_seconds = settings.ws_idle_timeout_seconds
        self.idle_timeout_seconds = float(idle_timeout_seconds)
        self._connections: dict[str, WebSocketConnection] = {}
        self._commands: asyncio.Queue | None = None
        self._owner: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def __len__(self) -> int:
        return len(self._connections)

    def connection_ids(self) -> list[str]:
        return list(self._connections)

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        if self._owner is not None and not self._owner.done() and self._loop is loop:
            return
        self._loop = loop
        self._commands = asyncio.Queue()
        self._owner = asyncio.create_task(self._run_owner(self._commands), name="relaygate-ws-registry")
        logger.info("websocket registry started")

    async def stop(self) -> None:
        if self._owner is None:
            return
        self._owner.cancel()
        try:
            await self._owner
        except asyncio.CancelledError:
            pass
        finally:
            self._owner = None
            self._commands = None
        logger.info("websocket registry stopped")

    async def register(self, connection: WebSocketConnection) -> int:
        return await self._submit("register", connection)

    async def unregister(self, connection_id: str) -> WebSocketConnection | None:
        return await self._submit("unregister", connection_id)

    async def touch(self, connection_id: str) -> None:
        await self._submit("touch", connection_id)

    async def sweep(self, now: float | None = None) -> list[WebSocketConnection]:
        """Drop connections idle past the timeout with no relay in flight; the caller closes them."""
        return await self._submit("sweep", time.time() if now is None else now)

    async def close_idle(self, now: float | None = None) -> int:
        expired = await self.sweep(now)
        for connection in expired:
            await connection.close(SESSION_TIMEOUT_CODE, SESSION_TIMEOUT_REASON)
        return len(expired)

    async def close_all(self) -> int:
        connections = await self._submit("clear")
        for connection in connections:
            await connection.close(SERVER_SHUTDOWN_CODE, SERVER_SHUTDOWN_REASON)
        return len(connections)

    async def _submit(self, op: str, *args: Any) -> Any:
        await self.start()
        assert self._commands is not None
        future = asyncio.get_running_loop().create_future()
        await self._commands.put((op, args, future))
        return await future

    async def _run_owner(self, commands: asyncio.Queue) -> None:
        while True:
            op, args, future = await commands.get()
            try:
                result = self._apply(op, *args)
            except Exception as exc:  # pragma: no cover - operational guard
                if not future.done():
                    future.set_exception(exc)
                continue
            if not future.done():
                future.set_result(result)

    def _apply(self, op: str, *args: Any) -> Any:
        if op == "register":
            connection: WebSocketConnection = args[0]
            self._connections[connection.id] = connection
            return len(self._connections)
        if op == "unregister":
            return self._connections.pop(args[0], None)
        if op == "touch":
            found = self._connections.get(args[0])
            if found is not None:
                found.last_activity = time.time()
            return None
        if op == "sweep":
            now = float(args[0])
            expired = [
                connection
                for connection in self._connections.values()
                if not connection.busy and now - connection.last_activity > self.idle_timeout_seconds
            ]
            for connection in expired:
                del self._connections[connection.id]
                logger.info(
                    "websocket session idle, closing connection_id=%s idle_seconds=%.1f",
                    connection.id,
                    now - connection.last_activity,
                )
                log_event("ws_session_swept", connection_id=connection.id)
            return expired
        if op == "clear":
            connections = list(self._connections.values())
            self._connections.clear()
            return connections
        raise ValueError(f"unknown registry op: {op}")
