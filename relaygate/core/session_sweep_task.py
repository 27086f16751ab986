"""Background task that closes idle WebSocket sessions."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from relaygate.config.settings import settings
from relaygate.util.logger import logger


class SessionSweepTask:
    """Owns the periodic idle sweep of the WebSocket registry."""

    def __init__(self, *, sweep_func: Callable[[], Awaitable[int]], interval_seconds: float | None = None) -> None:
        self._sweep_func = sweep_func
        if interval_seconds is None:
            interval_seconds = settings.ws_sweep_interval_seconds
        self._interval = max(0.01, float(interval_seconds))
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run_loop(), name="relaygate-ws-session-sweep")
        logger.info("session sweep task started interval=%ss", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
        logger.info("session sweep task stopped")

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                removed = int(await self._sweep_func())
                if removed > 0:
                    logger.info("idle websocket sessions closed removed=%s", removed)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - operational guard
                logger.warning("session sweep failed: %s", exc)
